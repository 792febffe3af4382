"""Tests for experimental economy griefing detection."""

import pytest

from factories import frame, kill_event, player, timeline
from griefwatch.core.config import EconomyConfig
from griefwatch.core.constants import Team
from griefwatch.core.timeline import Round
from griefwatch.core.utils import median_upper
from griefwatch.domains.economy import (
    BuyState,
    EconomyEventType,
    EconomyGriefingDetector,
    Inventory,
    detect_economy_griefing,
    grenade_type,
    infer_buy_state,
    is_primary_weapon,
    is_secondary_weapon,
    weapon_price,
)

ROUND_TICKS = 6400
FREEZE_TICKS = 640
BUY_TICKS = 1280

ROSTER = {
    1: ("Cal", Team.CT),
    2: ("Cora", Team.CT),
    3: ("Cyd", Team.CT),
    4: ("Tam", Team.T),
    5: ("Tess", Team.T),
    6: ("Theo", Team.T),
}
RIFLE_CT = ["weapon_m4a1", "item_assaultsuit", "item_defuser"]


def freeze_end(round_number: int) -> int:
    return (round_number - 1) * ROUND_TICKS + FREEZE_TICKS


def raw(name: str, tick: int, user: str | None = None, **fields) -> dict:
    data = {"event_name": name, "tick": tick}
    if user is not None:
        data["user_name"] = user
    data.update(fields)
    return data


def buy_phase(round_number: int, purchases: dict[str, list[str]], equips=None, buy_end=True) -> list[dict]:
    """Spawns, freeze-time equips, purchases in order, and the end of buy time."""
    start = (round_number - 1) * ROUND_TICKS
    events = [raw("player_spawn", start + 10, name) for name, _ in ROSTER.values()]
    for name, items in (equips or {}).items():
        events += [raw("item_equip", start + 20, name, item=item) for item in items]
    for name, items in purchases.items():
        events += [
            raw("item_pickup", freeze_end(round_number) + 64 * (i + 1), name, item=item)
            for i, item in enumerate(items)
        ]
    if buy_end:
        events.append(raw("buytime_ended", freeze_end(round_number) + BUY_TICKS))
    return events


def match(raw_events, rounds=1, frame_events=None):
    frame_events = frame_events or {}
    ticks = set(range(0, rounds * ROUND_TICKS, FREEZE_TICKS)) | set(frame_events)
    frames = [
        frame(tick, [player(pid, name, team) for pid, (name, team) in ROSTER.items()], frame_events.get(tick, []))
        for tick in sorted(ticks)
    ]
    round_list = [
        Round(
            number=n,
            start_tick=(n - 1) * ROUND_TICKS,
            freeze_end_tick=freeze_end(n),
            end_tick=n * ROUND_TICKS - 1,
        )
        for n in range(1, rounds + 1)
    ]
    return timeline(frames, round_list, raw_events=raw_events)


def player_result(result, name):
    return next(p for p in result.players if p.player_name == name)


def types_for(result, name):
    return [e.type for e in player_result(result, name).events]


def full_ct_half_t(cyd=(), tam=("weapon_ak47", "item_assaultsuit")):
    return {
        "Cal": RIFLE_CT,
        "Cora": RIFLE_CT,
        "Cyd": list(cyd),
        "Tam": list(tam),
        "Tess": ["weapon_ak47", "item_assaultsuit"],
        "Theo": ["weapon_ak47", "item_assaultsuit"],
    }


def eco_t(tam=("weapon_awp", "item_assaultsuit")):
    return {"Cal": RIFLE_CT, "Cora": RIFLE_CT, "Cyd": RIFLE_CT, "Tam": list(tam)}


class TestPricing:
    """Tests for item classification and inventory value."""

    def test_weapon_price(self):
        assert weapon_price("weapon_ak47") == 2700
        assert weapon_price("WEAPON_AWP") == 4750
        assert weapon_price("weapon_unknown") == 0

    def test_weapon_slots(self):
        assert is_primary_weapon("weapon_m4a1_silencer")
        assert not is_primary_weapon("weapon_glock")
        assert is_secondary_weapon("weapon_usp_silencer")
        assert grenade_type("weapon_incgrenade") == "molotov"
        assert grenade_type("weapon_flashbang") == "flash"
        assert grenade_type("weapon_ak47") is None

    def test_inventory_value(self):
        inventory = Inventory()
        for item in ("weapon_ak47", "item_assaultsuit", "weapon_flashbang", "weapon_flashbang"):
            inventory.add(item)
        assert inventory.value() == 2700 + 650 + 350 + 400

    def test_grenade_carry_limit(self):
        inventory = Inventory()
        for _ in range(6):
            inventory.add("weapon_flashbang")
        assert inventory.value() == 4 * 200

    def test_copy_is_independent(self):
        inventory = Inventory()
        inventory.add("weapon_smokegrenade")
        snapshot = inventory.copy()
        inventory.add("weapon_smokegrenade")
        assert snapshot.grenades["smoke"] == 1


class TestBuyState:
    def test_thresholds(self):
        config = EconomyConfig()
        assert infer_buy_state([], config) == BuyState.ECO
        assert infer_buy_state([1000, 1000], config) == BuyState.ECO
        assert infer_buy_state([2000, 2000, 4000], config) == BuyState.FORCE
        assert infer_buy_state([4000, 4000], config) == BuyState.FULL

    def test_even_count_takes_upper_middle(self):
        assert infer_buy_state([0, 4000], EconomyConfig()) == BuyState.FULL

    def test_median_upper(self):
        assert median_upper([4, 1, 3, 2]) == 3
        assert median_upper([5, 1, 3]) == 3
        assert median_upper([]) == 0.0


class TestRoundDetectors:
    """One round at a time."""

    def test_underbuy_on_team_full_buy(self):
        result = detect_economy_griefing(match(buy_phase(1, full_ct_half_t())))
        cyd = player_result(result, "Cyd")

        assert [e.type for e in cyd.events] == [EconomyEventType.UNDERBUY]
        event = cyd.events[0]
        assert event.score == pytest.approx(0.4)
        assert event.confidence == pytest.approx(0.8)
        assert event.features_summary["team_buy_state"] == BuyState.FULL
        assert "$4,500" in event.human_reason
        assert cyd.flagged_match is True

    def test_team_that_bought_is_clean(self):
        result = detect_economy_griefing(match(buy_phase(1, full_ct_half_t())))
        for name in ("Cal", "Cora", "Tam", "Tess", "Theo"):
            assert types_for(result, name) == []

    def test_round_summary(self):
        result = detect_economy_griefing(match(buy_phase(1, full_ct_half_t())))
        summary = player_result(result, "Cal").round_summaries[0]

        assert summary.pre_buy_value == 0
        assert summary.post_buy_value == 4500
        assert summary.acquired_during_buy == RIFLE_CT
        assert summary.team_median_value == 4500
        assert summary.team_buy_state == BuyState.FULL

    def test_kitless_ct(self):
        result = detect_economy_griefing(match(buy_phase(1, full_ct_half_t(cyd=["weapon_m4a1", "item_assaultsuit"]))))
        events = player_result(result, "Cyd").events

        assert [e.type for e in events] == [EconomyEventType.KITLESS_CT]
        assert events[0].confidence == pytest.approx(0.24)

    def test_overbuy_on_team_eco(self):
        result = detect_economy_griefing(match(buy_phase(1, eco_t())))
        tam = player_result(result, "Tam")

        assert [e.type for e in tam.events] == [EconomyEventType.OVERBUY]
        assert tam.events[0].confidence == pytest.approx(0.45)
        assert tam.flagged_match is False

    def test_overbuy_with_impact_is_discounted(self):
        events = buy_phase(1, eco_t()) + [raw("player_death", freeze_end(1) + 2000, "Cal", attacker_name="Tam")]
        tam = player_result(detect_economy_griefing(match(events)), "Tam")
        assert tam.events[0].confidence == pytest.approx(0.225)

    def test_high_value_early_death(self):
        death = raw("player_death", freeze_end(1) + 5 * 64, "Tam", attacker_name="Cal")
        tam = player_result(detect_economy_griefing(match(buy_phase(1, eco_t()) + [death])), "Tam")

        assert [e.type for e in tam.events] == [EconomyEventType.OVERBUY, EconomyEventType.HIGH_VALUE_EARLY_DEATH]
        early = tam.events[1]
        assert early.features_summary["time_to_death"] == pytest.approx(5.0)
        assert early.confidence == pytest.approx(0.7)
        assert tam.flagged_match is True

    def test_damage_dealt_is_impact(self):
        events = buy_phase(1, eco_t()) + [
            raw("player_hurt", freeze_end(1) + 200, "Cal", attacker_name="Tam", dmg_health=80),
            raw("player_death", freeze_end(1) + 5 * 64, "Tam", attacker_name="Cal"),
        ]
        assert types_for(detect_economy_griefing(match(events)), "Tam") == [EconomyEventType.OVERBUY]

    def test_frame_kills_when_no_raw_combat(self):
        tick = freeze_end(1) + 5 * 64
        tl = match(buy_phase(1, eco_t()), frame_events={tick: [kill_event(tick, "Cal", "Tam", "m4a1")]})
        assert EconomyEventType.HIGH_VALUE_EARLY_DEATH in types_for(detect_economy_griefing(tl), "Tam")


class TestInventoryTracking:
    """Buy window, saves and transfers."""

    def test_pickups_after_buy_time_do_not_count(self):
        events = buy_phase(1, full_ct_half_t()) + [raw("item_pickup", freeze_end(1) + 2000, "Cyd", item="weapon_awp")]
        summary = player_result(detect_economy_griefing(match(events)), "Cyd").round_summaries[0]
        assert summary.post_buy_value == 0

    def test_fallback_buy_window(self):
        events = buy_phase(1, full_ct_half_t(), buy_end=False)
        events.append(raw("item_pickup", freeze_end(1) + 25 * 64, "Cyd", item="weapon_awp"))
        cyd = player_result(detect_economy_griefing(match(events)), "Cyd")
        assert cyd.round_summaries[0].post_buy_value == 0
        assert [e.type for e in cyd.events] == [EconomyEventType.UNDERBUY]

    def test_saved_weapon_is_not_underbuy(self):
        events = buy_phase(1, full_ct_half_t(cyd=["weapon_mp9"]))
        events += buy_phase(2, full_ct_half_t(), equips={"Cyd": ["weapon_mp9"]})
        cyd = player_result(detect_economy_griefing(match(events, rounds=2)), "Cyd")

        assert [(e.round, e.type) for e in cyd.events] == [(1, EconomyEventType.UNDERBUY)]
        assert cyd.round_summaries[1].pre_buy_value == 1250
        assert cyd.round_summaries[1].acquired_during_buy == []

    def test_teammate_transfer_is_recorded(self):
        events = buy_phase(1, full_ct_half_t(cyd=["weapon_m4a1"]))
        events.append(raw("item_pickup", freeze_end(1) + 96, "Cora", item="weapon_m4a1"))
        result = detect_economy_griefing(match(events))

        assert player_result(result, "Cyd").round_summaries[0].dropped_during_buy_to == [2]

    def test_enemy_pickup_is_not_a_transfer(self):
        events = buy_phase(1, full_ct_half_t(cyd=["weapon_m4a1"]))
        events.append(raw("item_pickup", freeze_end(1) + 96, "Tam", item="weapon_m4a1"))
        result = detect_economy_griefing(match(events))

        assert player_result(result, "Cyd").round_summaries[0].dropped_during_buy_to == []


class TestMatchScoring:
    """Pattern multipliers and match flags."""

    def test_pattern_multiplier(self):
        detector = EconomyGriefingDetector(match([]))
        assert detector.pattern_multiplier(1) == pytest.approx(1.0)
        assert detector.pattern_multiplier(2) == pytest.approx(1.25)
        assert detector.pattern_multiplier(9) == pytest.approx(3.0)
        assert detector.pattern_multiplier(50) == pytest.approx(3.0)

    def test_repeated_underbuys_flag_match(self):
        events = buy_phase(1, full_ct_half_t()) + buy_phase(2, full_ct_half_t())
        result = detect_economy_griefing(match(events, rounds=2))
        cyd = player_result(result, "Cyd")

        assert len(cyd.events) == 2
        assert cyd.match_score == pytest.approx((0.4 + 0.4) * 1.25)
        assert cyd.match_confidence == pytest.approx(1.0)
        assert cyd.flagged_match is True
        assert [p.player_name for p in result.flagged] == ["Cyd"]

    def test_single_weak_event_is_not_flagged(self):
        config = EconomyConfig(match_confidence_flag=0.9)
        result = EconomyGriefingDetector(match(buy_phase(1, full_ct_half_t())), config).detect()
        assert player_result(result, "Cyd").flagged_match is False

    def test_no_rounds(self):
        tl = match(buy_phase(1, full_ct_half_t()))
        tl.rounds = []
        result = detect_economy_griefing(tl)
        assert result.players == []
        assert result.events == []

    def test_to_dict(self):
        data = player_result(detect_economy_griefing(match(buy_phase(1, full_ct_half_t()))), "Cyd").to_dict()
        assert data["flaggedMatch"] is True
        assert data["events"][0]["type"] == "Underbuy"
        assert data["roundSummaries"][0]["teamBuyState"] == "FULL"
