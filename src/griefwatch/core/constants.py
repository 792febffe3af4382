"""
Griefwatch - Constants

Game constants shared by the timeline model and every detector.
"""

from enum import StrEnum


class Team(StrEnum):
    """Team a player belongs to at a given frame."""

    CT = "CT"
    T = "T"
    SPECTATOR = "SPECTATOR"

    @classmethod
    def parse(cls, value) -> "Team":
        """Coerce decoder output (names or CS2 team numbers) into a Team."""
        if isinstance(value, Team):
            return value
        if value is None:
            return cls.SPECTATOR
        if isinstance(value, (int, float)):
            return TEAM_NUMBERS.get(int(value), cls.SPECTATOR)
        text = str(value).strip().upper()
        if text in ("CT", "COUNTER-TERRORIST", "COUNTER_TERRORIST", "3"):
            return cls.CT
        if text in ("T", "TERRORIST", "TERRORISTS", "2"):
            return cls.T
        return cls.SPECTATOR


# CS2 team_num values
TEAM_NUMBERS = {
    0: Team.SPECTATOR,
    1: Team.SPECTATOR,
    2: Team.T,
    3: Team.CT,
}

# CS2 demos record at 64 ticks/s; some community servers run 128
CS2_TICK_RATE = 64

MAX_HP = 100

# Attacker names the decoder uses for environment damage (fall, bomb, world brush)
WORLD_ATTACKER_NAMES = frozenset({"world", "<world>", "environment", ""})

# Kill descriptions emitted by the decoder:
#   "<attacker> killed <victim> with <weapon>[ (headshot)]"
KILL_DESCRIPTION_PATTERN = r"^(.+?)\s+killed\s+(.+?)\s+with\s+(.+?)(?:\s+\(headshot\))?$"

# Upper bound on rows a sampled detector will process in one round
MAX_SAMPLE_ROWS = 50_000

# Frame event types
EVENT_KILL = "kill"
EVENT_DAMAGE = "damage"
EVENT_WEAPON_FIRE = "weapon_fire"
EVENT_PLANT = "plant"
EVENT_DEFUSE = "defuse"
EVENT_DEFUSE_START = "defuse_start"
EVENT_DEFUSE_STOP = "defuse_stop"
EVENT_BOMB_PICKUP = "bomb_pickup"
EVENT_BOMB_DROP = "bomb_drop"
EVENT_THROW = "throw"
EVENT_CHAT = "chat"

# Actions that count as player activity for the inactivity detector
ACTION_EVENT_TYPES = frozenset({EVENT_WEAPON_FIRE, EVENT_THROW, EVENT_PLANT, EVENT_DEFUSE})


# ============================================================================
# Economy
# ============================================================================

# Approximate CS2 prices, keyed by decoder item name
WEAPON_PRICES = {
    # Rifles
    "weapon_ak47": 2700,
    "weapon_m4a1": 3100,
    "weapon_m4a4": 3100,
    "weapon_m4a1_silencer": 2900,
    "weapon_aug": 3300,
    "weapon_sg556": 3000,
    "weapon_galil": 1800,
    "weapon_galilar": 1800,
    "weapon_famas": 2050,
    # Snipers
    "weapon_awp": 4750,
    "weapon_ssg08": 1700,
    "weapon_scar20": 5000,
    "weapon_g3sg1": 5000,
    # SMGs
    "weapon_mac10": 1050,
    "weapon_mp9": 1250,
    "weapon_mp7": 1500,
    "weapon_ump45": 1200,
    "weapon_p90": 2350,
    "weapon_bizon": 1400,
    "weapon_pp_bizon": 1400,
    "weapon_mp5sd": 1500,
    "weapon_mp5": 1500,
    # Shotguns
    "weapon_nova": 1050,
    "weapon_xm1014": 2000,
    "weapon_sawedoff": 1100,
    "weapon_mag7": 1300,
    # Pistols
    "weapon_glock": 200,
    "weapon_usp_silencer": 200,
    "weapon_hkp2000": 200,
    "weapon_p2000": 200,
    "weapon_p250": 300,
    "weapon_tec9": 500,
    "weapon_fiveseven": 500,
    "weapon_five_seven": 500,
    "weapon_cz75a": 500,
    "weapon_cz75": 500,
    "weapon_deagle": 700,
    "weapon_revolver": 600,
    "weapon_r8_revolver": 600,
    "weapon_elite": 300,
    "weapon_dual_berettas": 300,
    # Heavy
    "weapon_negev": 1700,
    "weapon_m249": 5200,
    # Grenades
    "weapon_hegrenade": 300,
    "weapon_flashbang": 200,
    "weapon_smokegrenade": 300,
    "weapon_molotov": 400,
    "weapon_incgrenade": 600,
    "weapon_decoy": 50,
    # Other
    "weapon_taser": 200,
    "weapon_zeus": 200,
    "weapon_knife": 0,
    "weapon_c4": 0,
    # Gear
    "item_kevlar": 650,
    "item_assaultsuit": 1000,
    "item_defuser": 400,
}

ARMOR_PRICE = 650
HELMET_PRICE = 350
DEFUSER_PRICE = 400
TASER_PRICE = 200

GRENADE_PRICES = {
    "flash": 200,
    "smoke": 300,
    "molotov": 400,
    "he": 300,
    "decoy": 50,
}

# Max grenades of one kind a player can carry
GRENADE_CARRY_LIMIT = 4

PRIMARY_WEAPON_KEYS = (
    "ak47",
    "m4a1",
    "m4a4",
    "aug",
    "sg556",
    "galil",
    "famas",
    "awp",
    "ssg08",
    "scar20",
    "g3sg1",
    "mac10",
    "mp9",
    "mp7",
    "ump45",
    "p90",
    "bizon",
    "mp5",
    "nova",
    "xm1014",
    "sawedoff",
    "mag7",
    "negev",
    "m249",
)

SECONDARY_WEAPON_KEYS = (
    "glock",
    "usp",
    "p2000",
    "hkp2000",
    "p250",
    "tec9",
    "fiveseven",
    "five_seven",
    "cz75",
    "deagle",
    "revolver",
    "r8",
    "elite",
    "dual_berettas",
)
