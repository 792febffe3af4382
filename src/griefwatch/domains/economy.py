"""
Economy Griefing Detection (experimental)

Demos carry no reliable money values, so buys are inferred from inventory
events (``item_pickup`` / ``item_equip``) inside each round's buy window and
priced from a static table. A player's post-buy value is compared against the
median of their team:

- Underbuy: the team buys, the player doesn't (saved or shared weapons excepted)
- Overbuy: the team ecos, the player buys big
- KitlessCT: a CT buy round without a defuse kit
- HighValueEarlyDeath: an expensive loadout lost early with no impact

Single rounds are weak evidence. Match-level scoring multiplies repeated
patterns, and a match is flagged only on repetition or high aggregate
confidence.
"""

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from enum import StrEnum

from griefwatch.core.config import EconomyConfig
from griefwatch.core.constants import (
    ARMOR_PRICE,
    DEFUSER_PRICE,
    EVENT_DAMAGE,
    EVENT_KILL,
    GRENADE_CARRY_LIMIT,
    GRENADE_PRICES,
    HELMET_PRICE,
    PRIMARY_WEAPON_KEYS,
    SECONDARY_WEAPON_KEYS,
    TASER_PRICE,
    WEAPON_PRICES,
    Team,
)
from griefwatch.core.timeline import RawEvent, Round, Timeline, normalize_raw_events
from griefwatch.core.utils import median_upper, record_to_dict, timed
from griefwatch.domains.friendly_fire import parse_kill_description

logger = logging.getLogger(__name__)

INVENTORY_EVENTS = frozenset({"item_pickup", "item_equip"})
DAMAGE_EVENTS = frozenset({"player_hurt", "damage"})
DEATH_EVENTS = frozenset({"player_death", "other_death"})


class BuyState(StrEnum):
    ECO = "ECO"
    FORCE = "FORCE"
    FULL = "FULL"


class EconomyEventType(StrEnum):
    UNDERBUY = "Underbuy"
    OVERBUY = "Overbuy"
    KITLESS_CT = "KitlessCT"
    HIGH_VALUE_EARLY_DEATH = "HighValueEarlyDeath"


STRONG_EVENT_TYPES = frozenset({EconomyEventType.UNDERBUY, EconomyEventType.OVERBUY})
MEDIUM_EVENT_TYPES = frozenset({EconomyEventType.KITLESS_CT, EconomyEventType.HIGH_VALUE_EARLY_DEATH})


# ============================================================================
# Pricing and inventory
# ============================================================================


def weapon_price(item: str) -> int:
    return WEAPON_PRICES.get(item.lower(), 0)


def is_primary_weapon(item: str) -> bool:
    name = item.lower()
    return any(key in name for key in PRIMARY_WEAPON_KEYS)


def is_secondary_weapon(item: str) -> bool:
    name = item.lower()
    return any(key in name for key in SECONDARY_WEAPON_KEYS)


def grenade_type(item: str) -> str | None:
    name = item.lower()
    if "flash" in name:
        return "flash"
    if "smoke" in name:
        return "smoke"
    if "molotov" in name or "incgrenade" in name:
        return "molotov"
    if "hegrenade" in name:
        return "he"
    if "decoy" in name:
        return "decoy"
    return None


@dataclass
class Inventory:
    """What a player is carrying, as far as inventory events tell."""

    primary: str | None = None
    secondary: str | None = None
    armor: bool = False
    helmet: bool = False
    kit: bool = False
    taser: bool = False
    grenades: dict[str, int] = field(default_factory=lambda: dict.fromkeys(GRENADE_PRICES, 0))

    def add(self, item: str) -> None:
        name = item.lower()
        if "zeus" in name or "taser" in name:
            self.taser = True
        elif is_primary_weapon(name):
            self.primary = item
        elif is_secondary_weapon(name):
            self.secondary = item
        elif "assaultsuit" in name:
            self.armor = self.helmet = True
        elif "kevlar" in name:
            self.armor = True
        elif "defuse" in name:
            self.kit = True
        else:
            kind = grenade_type(name)
            if kind is not None:
                self.grenades[kind] = min(self.grenades[kind] + 1, GRENADE_CARRY_LIMIT)

    def value(self) -> int:
        total = 0
        if self.primary:
            total += weapon_price(self.primary)
        if self.secondary:
            total += weapon_price(self.secondary)
        if self.armor:
            total += ARMOR_PRICE
        if self.helmet:
            total += HELMET_PRICE
        if self.kit:
            total += DEFUSER_PRICE
        if self.taser:
            total += TASER_PRICE
        total += sum(GRENADE_PRICES[kind] * count for kind, count in self.grenades.items())
        return total

    def copy(self) -> "Inventory":
        return Inventory(
            primary=self.primary,
            secondary=self.secondary,
            armor=self.armor,
            helmet=self.helmet,
            kit=self.kit,
            taser=self.taser,
            grenades=dict(self.grenades),
        )


def infer_buy_state(values: list[float], config: EconomyConfig) -> BuyState:
    """Team buy state from the median teammate post-buy value."""
    if not values:
        return BuyState.ECO
    median = median_upper(values)
    if median < config.eco_median_threshold:
        return BuyState.ECO
    if median >= config.full_median_threshold:
        return BuyState.FULL
    return BuyState.FORCE


# ============================================================================
# Output models
# ============================================================================


@dataclass
class EconomyEvent:
    round: int
    actor_id: int
    actor_name: str
    type: EconomyEventType
    score: float
    confidence: float
    features_summary: dict
    human_reason: str

    def to_dict(self) -> dict:
        return record_to_dict(self)


@dataclass
class EconomyRoundSummary:
    round: int
    pre_buy_value: int
    post_buy_value: int
    acquired_during_buy: list[str] = field(default_factory=list)
    dropped_during_buy_to: list[int] = field(default_factory=list)
    team_median_value: float = 0.0
    team_buy_state: BuyState = BuyState.ECO


@dataclass
class EconomyPlayerResult:
    player_id: int
    player_name: str
    events: list[EconomyEvent] = field(default_factory=list)
    match_score: float = 0.0
    match_confidence: float = 0.0
    flagged_match: bool = False
    round_summaries: list[EconomyRoundSummary] = field(default_factory=list)

    def to_dict(self) -> dict:
        return record_to_dict(self)


@dataclass
class EconomyResult:
    players: list[EconomyPlayerResult] = field(default_factory=list)

    @property
    def events(self) -> list[EconomyEvent]:
        return [event for player in self.players for event in player.events]

    @property
    def flagged(self) -> list[EconomyPlayerResult]:
        return [player for player in self.players if player.flagged_match]

    def to_dict(self) -> dict:
        return record_to_dict(self)


# ============================================================================
# Round state
# ============================================================================


@dataclass
class _PlayerRound:
    inventory: Inventory = field(default_factory=Inventory)
    pre_buy: Inventory | None = None
    post_buy: Inventory | None = None
    acquired: list[str] = field(default_factory=list)
    dropped_to: list[int] = field(default_factory=list)

    def snapshot_pre_buy(self) -> None:
        if self.pre_buy is None:
            self.pre_buy = self.inventory.copy()

    def snapshot_post_buy(self) -> None:
        if self.post_buy is None:
            self.post_buy = self.inventory.copy()


@dataclass
class _Combat:
    damage: dict[tuple[int, int], float] = field(default_factory=lambda: defaultdict(float))
    kills: dict[tuple[int, int], int] = field(default_factory=lambda: defaultdict(int))
    death_ticks: dict[tuple[int, int], int] = field(default_factory=dict)


@dataclass
class _Pickup:
    player_id: int
    tick: int


class EconomyGriefingDetector:
    def __init__(self, timeline: Timeline, config: EconomyConfig | None = None):
        self.timeline = timeline
        self.config = config or EconomyConfig()
        self._names = timeline.player_names()
        self._ids_by_name = {name: pid for pid, name in self._names.items()}
        self._events = normalize_raw_events(timeline.raw_events)

    def _resolve(self, player_id: int | None, name: str | None) -> int | None:
        if player_id is not None and player_id in self._names:
            return player_id
        if name is not None:
            return self._ids_by_name.get(name)
        return None

    @timed
    def detect(self) -> EconomyResult:
        rounds = list(self.timeline.rounds)
        if not rounds:
            return EconomyResult()

        windows = {r.number: self._buy_window(r) for r in rounds}
        inventories = self._track_inventories(rounds, windows)
        combat = self._collect_combat()
        saved = self._saved_weapons(rounds, inventories)

        results: dict[int, EconomyPlayerResult] = {}
        for rnd in rounds:
            self._analyze_round(rnd, inventories.get(rnd.number, {}), combat, saved, results)

        players = [results[pid] for pid in sorted(results)]
        for player in players:
            self._score_match(player)
        logger.info(
            f"Economy analysis: {sum(len(p.events) for p in players)} events, "
            f"{sum(1 for p in players if p.flagged_match)} flagged players"
        )
        return EconomyResult(players=players)

    # ------------------------------------------------------------------
    # Inventory tracking
    # ------------------------------------------------------------------

    def _buy_window(self, rnd: Round) -> tuple[int, int]:
        start = rnd.freeze_end_tick if rnd.freeze_end_tick is not None else rnd.start_tick
        round_end = rnd.end_tick if rnd.end_tick is not None else self.timeline.last_tick
        for event in self._events:
            if event.name == "buytime_ended" and start <= event.tick <= round_end:
                return start, event.tick
        return start, start + self.timeline.seconds_to_ticks(self.config.buy_window_fallback_seconds)

    def _track_inventories(
        self, rounds: list[Round], windows: dict[int, tuple[int, int]]
    ) -> dict[int, dict[int, _PlayerRound]]:
        by_round: dict[int, dict[int, _PlayerRound]] = {r.number: {} for r in rounds}
        transfer_ticks = self.timeline.seconds_to_ticks(self.config.transfer_window_seconds)
        recent_pickups: dict[tuple[int, str], _Pickup] = {}

        for event in self._events:
            rnd = self.timeline.round_for_tick(event.tick)
            if rnd is None or rnd.number not in by_round:
                continue
            buy_start, buy_end = windows[rnd.number]
            players = by_round[rnd.number]

            if event.name == "player_spawn":
                player_id = self._resolve(event.player_id, event.player_name)
                if player_id is not None:
                    players[player_id] = _PlayerRound()
                continue
            if event.name not in INVENTORY_EVENTS or not event.item:
                continue

            player_id = self._resolve(event.player_id, event.player_name)
            if player_id is None:
                logger.debug(f"Inventory event for unknown player {event.player_name!r} at tick {event.tick}")
                continue

            state = players.setdefault(player_id, _PlayerRound())
            if event.tick >= buy_start:
                state.snapshot_pre_buy()
            if event.tick > buy_end:
                state.snapshot_post_buy()
                continue

            state.inventory.add(event.item)
            if event.tick < buy_start:
                continue
            if event.item not in state.acquired:
                state.acquired.append(event.item)

            key = (rnd.number, event.item)
            previous = recent_pickups.get(key)
            if (
                previous is not None
                and previous.player_id != player_id
                and 0 < event.tick - previous.tick <= transfer_ticks
                and self._same_team(previous.player_id, player_id, event.tick)
            ):
                source = players.setdefault(previous.player_id, _PlayerRound())
                if player_id not in source.dropped_to:
                    source.dropped_to.append(player_id)
            else:
                recent_pickups[key] = _Pickup(player_id, event.tick)

        for players in by_round.values():
            for state in players.values():
                state.snapshot_pre_buy()
                state.snapshot_post_buy()
        return by_round

    def _same_team(self, a: int, b: int, tick: int) -> bool:
        return self._team_at(a, tick) == self._team_at(b, tick)

    def _team_at(self, player_id: int, tick: int) -> Team | None:
        frame = self.timeline.frame_at_or_before(tick)
        if frame is None and self.timeline.frames:
            frame = self.timeline.frames[0]
        player = frame.player_by_id(player_id) if frame else None
        if player is not None:
            return player.team
        for frame in self.timeline.frames:
            found = frame.player_by_id(player_id)
            if found is not None:
                return found.team
        return None

    def _saved_weapons(
        self, rounds: list[Round], inventories: dict[int, dict[int, _PlayerRound]]
    ) -> set[tuple[int, int]]:
        """(player, round) pairs where the primary carried over and nothing was bought."""
        saved = set()
        for prev_round, round_ in zip(rounds, rounds[1:]):
            previous = inventories.get(prev_round.number, {})
            for player_id, state in inventories.get(round_.number, {}).items():
                before = previous.get(player_id)
                if before is None or before.post_buy is None or state.post_buy is None:
                    continue
                primary = before.post_buy.primary
                if primary and state.post_buy.primary == primary and not state.acquired:
                    saved.add((player_id, round_.number))
        return saved

    # ------------------------------------------------------------------
    # Combat impact
    # ------------------------------------------------------------------

    def _collect_combat(self) -> _Combat:
        combat = _Combat()
        raw_combat = [e for e in self._events if e.name in DAMAGE_EVENTS or e.name in DEATH_EVENTS]
        if raw_combat:
            for event in raw_combat:
                self._record_raw_combat(combat, event)
        else:
            self._record_frame_combat(combat)
        return combat

    def _record_raw_combat(self, combat: _Combat, event: RawEvent) -> None:
        round_number = self.timeline.round_number_for_tick(event.tick)
        if not round_number:
            return
        attacker = self._resolve(event.attacker_id, event.attacker_name)
        victim = self._resolve(event.player_id, event.player_name)

        if event.name in DAMAGE_EVENTS:
            if attacker is not None and (event.damage or 0) > 0:
                combat.damage[(attacker, round_number)] += event.damage
            return

        if attacker is not None and attacker != victim:
            combat.kills[(attacker, round_number)] += 1
        if victim is not None:
            combat.death_ticks[(victim, round_number)] = event.tick

    def _record_frame_combat(self, combat: _Combat) -> None:
        for frame in self.timeline.frames:
            for event in frame.events:
                round_number = self.timeline.round_number_for_tick(event.tick)
                if not round_number:
                    continue
                if event.type == EVENT_DAMAGE:
                    attacker = self._resolve(None, event.attacker_name)
                    if attacker is not None and (event.damage or 0) > 0:
                        combat.damage[(attacker, round_number)] += event.damage
                elif event.type == EVENT_KILL:
                    names = (event.attacker_name, event.victim_name)
                    if not all(names):
                        parsed = parse_kill_description(event.description)
                        if parsed is None:
                            continue
                        names = parsed[:2]
                    attacker, victim = (self._resolve(None, n) for n in names)
                    if attacker is not None and attacker != victim:
                        combat.kills[(attacker, round_number)] += 1
                    if victim is not None:
                        combat.death_ticks[(victim, round_number)] = event.tick

    # ------------------------------------------------------------------
    # Per-round detectors
    # ------------------------------------------------------------------

    def _analyze_round(
        self,
        rnd: Round,
        players: dict[int, _PlayerRound],
        combat: _Combat,
        saved: set[tuple[int, int]],
        results: dict[int, EconomyPlayerResult],
    ) -> None:
        sample_tick = rnd.freeze_end_tick if rnd.freeze_end_tick is not None else rnd.start_tick
        teams = {pid: self._team_at(pid, sample_tick) for pid in players}
        values = {pid: state.post_buy.value() for pid, state in players.items()}

        medians: dict[Team, float] = {}
        states: dict[Team, BuyState] = {}
        for team in (Team.CT, Team.T):
            team_values = [values[pid] for pid, t in teams.items() if t == team]
            medians[team] = median_upper(team_values) if team_values else 0.0
            states[team] = infer_buy_state(team_values, self.config)

        freeze_end = rnd.freeze_end_tick if rnd.freeze_end_tick is not None else rnd.start_tick
        for player_id, state in sorted(players.items()):
            team = teams[player_id]
            if team not in (Team.CT, Team.T):
                continue
            name = self._names.get(player_id, "Unknown")
            result = results.setdefault(player_id, EconomyPlayerResult(player_id=player_id, player_name=name))

            value = values[player_id]
            median = medians[team]
            buy_state = states[team]
            key = (player_id, rnd.number)
            kills = combat.kills.get(key, 0)
            damage = combat.damage.get(key, 0.0)
            death_tick = combat.death_ticks.get(key)
            time_to_death = (death_tick - freeze_end) / self.timeline.tick_rate if death_tick is not None else None

            result.round_summaries.append(
                EconomyRoundSummary(
                    round=rnd.number,
                    pre_buy_value=state.pre_buy.value(),
                    post_buy_value=value,
                    acquired_during_buy=list(state.acquired),
                    dropped_during_buy_to=list(state.dropped_to),
                    team_median_value=median,
                    team_buy_state=buy_state,
                )
            )

            context = _BuyContext(
                round=rnd.number,
                player_id=player_id,
                player_name=name,
                team=team,
                value=value,
                median=median,
                buy_state=buy_state,
                saved_weapon=key in saved,
                dropped_weapon=bool(state.dropped_to),
                has_kit=state.post_buy.kit,
                kills=kills,
                damage=damage,
                time_to_death=time_to_death,
            )
            for check in (self._underbuy, self._overbuy, self._kitless_ct, self._high_value_early_death):
                event = check(context)
                if event is not None:
                    result.events.append(event)

    def _event(
        self,
        ctx: "_BuyContext",
        event_type: EconomyEventType,
        score: float,
        confidence: float,
        summary: dict,
        reason: str,
    ) -> EconomyEvent:
        return EconomyEvent(
            round=ctx.round,
            actor_id=ctx.player_id,
            actor_name=ctx.player_name,
            type=event_type,
            score=score,
            confidence=min(1.0, confidence),
            features_summary=summary,
            human_reason=reason,
        )

    def _underbuy(self, ctx: "_BuyContext") -> EconomyEvent | None:
        config = self.config
        if ctx.buy_state == BuyState.ECO or ctx.saved_weapon or ctx.dropped_weapon:
            return None
        if ctx.value >= ctx.median * config.underbuy_ratio or ctx.value >= config.absolute_underbuy_value:
            return None
        score = config.weights.underbuy
        return self._event(
            ctx,
            EconomyEventType.UNDERBUY,
            score,
            score * 2.0,
            {"post_buy_value": ctx.value, "team_median_value": ctx.median, "team_buy_state": ctx.buy_state},
            f"Underbought: team median value ${ctx.median:,.0f} ({ctx.buy_state}), "
            f"player value ${ctx.value:,.0f} at buy end.",
        )

    def _overbuy(self, ctx: "_BuyContext") -> EconomyEvent | None:
        config = self.config
        if ctx.buy_state != BuyState.ECO:
            return None
        if ctx.saved_weapon and ctx.kills > 0:
            return None
        if ctx.value <= ctx.median * config.overbuy_ratio or ctx.value <= config.absolute_overbuy_value:
            return None
        had_impact = ctx.kills > 0 or ctx.damage > config.low_damage_threshold
        score = config.weights.overbuy
        return self._event(
            ctx,
            EconomyEventType.OVERBUY,
            score,
            score * 1.5 * (0.5 if had_impact else 1.0),
            {
                "post_buy_value": ctx.value,
                "team_median_value": ctx.median,
                "team_buy_state": ctx.buy_state,
                "kills": ctx.kills,
                "damage_dealt": ctx.damage,
            },
            f"Overbought on eco: team median ${ctx.median:,.0f} (ECO), player value ${ctx.value:,.0f}.",
        )

    def _kitless_ct(self, ctx: "_BuyContext") -> EconomyEvent | None:
        config = self.config
        if ctx.team != Team.CT or ctx.buy_state == BuyState.ECO or ctx.has_kit:
            return None
        if ctx.value < config.eco_median_threshold:
            return None
        score = config.weights.kitless_ct
        return self._event(
            ctx,
            EconomyEventType.KITLESS_CT,
            score,
            score * 1.2,
            {"post_buy_value": ctx.value, "team_buy_state": ctx.buy_state},
            f"CT {ctx.buy_state} buy but no defuser kit (value ${ctx.value:,.0f}).",
        )

    def _high_value_early_death(self, ctx: "_BuyContext") -> EconomyEvent | None:
        config = self.config
        if ctx.value < config.high_value_threshold or ctx.time_to_death is None:
            return None
        if ctx.time_to_death >= config.early_death_seconds:
            return None
        if ctx.kills > 0 or ctx.damage > config.low_damage_threshold:
            return None
        score = config.weights.high_value_early_death
        return self._event(
            ctx,
            EconomyEventType.HIGH_VALUE_EARLY_DEATH,
            score,
            score * 2.0,
            {
                "post_buy_value": ctx.value,
                "time_to_death": ctx.time_to_death,
                "kills": ctx.kills,
                "damage_dealt": ctx.damage,
            },
            f"High value early death: value ${ctx.value:,.0f}, died in {ctx.time_to_death:.1f}s "
            f"with {ctx.kills} kills and {ctx.damage:g} damage.",
        )

    # ------------------------------------------------------------------
    # Match scoring
    # ------------------------------------------------------------------

    def pattern_multiplier(self, repeat_count: int) -> float:
        config = self.config
        return min(
            config.pattern_multiplier_max,
            config.pattern_multiplier_base + (repeat_count - 1) * config.pattern_multiplier_increment,
        )

    def _score_match(self, player: EconomyPlayerResult) -> None:
        config = self.config
        by_type: dict[EconomyEventType, list[EconomyEvent]] = defaultdict(list)
        for event in player.events:
            by_type[event.type].append(event)

        score = confidence = 0.0
        for events in by_type.values():
            multiplier = self.pattern_multiplier(len(events))
            score += sum(e.score for e in events) * multiplier
            confidence += sum(e.confidence for e in events) * multiplier

        strong = sum(1 for e in player.events if e.type in STRONG_EVENT_TYPES)
        medium = sum(1 for e in player.events if e.type in MEDIUM_EVENT_TYPES)
        player.match_score = score
        player.match_confidence = min(1.0, confidence)
        player.flagged_match = (
            strong >= config.strong_event_flag_count
            or medium >= config.medium_event_flag_count
            or player.match_confidence >= config.match_confidence_flag
        )


@dataclass
class _BuyContext:
    round: int
    player_id: int
    player_name: str
    team: Team
    value: int
    median: float
    buy_state: BuyState
    saved_weapon: bool
    dropped_weapon: bool
    has_kit: bool
    kills: int
    damage: float
    time_to_death: float | None


def detect_economy_griefing(timeline: Timeline, config: EconomyConfig | None = None) -> EconomyResult:
    """Convenience function to run economy griefing detection over a match."""
    return EconomyGriefingDetector(timeline, config).detect()
