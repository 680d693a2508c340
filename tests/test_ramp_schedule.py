import pytest

from ramp_schedule import ConfigError, Schedule, Stage, parse_duration


def _average_load() -> Schedule:
    return Schedule([Stage(120, 100), Stage(300, 200), Stage(120, 100)])


@pytest.mark.parametrize(
    "value, expected",
    [
        (1.5, 1.5),
        (120, 120.0),
        ("90", 90.0),
        ("90s", 90.0),
        ("2m", 120.0),
        ("1h30m", 5400.0),
        ("1m30s", 90.0),
        ("500ms", 0.5),
        (" 2M ", 120.0),
    ],
)
def test_parse_duration_accepts_numbers_and_k6_strings(value, expected):
    assert parse_duration(value) == pytest.approx(expected)


@pytest.mark.parametrize("value", ["", "2x", "m", "2m fast", 0, -1, "0s", True, None, [1]])
def test_parse_duration_rejects_garbage(value):
    with pytest.raises(ConfigError):
        parse_duration(value)


def test_stage_normalizes_duration_strings():
    stage = Stage(duration="2m", target=100)
    assert stage.duration == 120.0
    assert stage.target == 100


@pytest.mark.parametrize(
    "duration, target",
    [(0, 10), (-5, 10), (10, -1), (10, 1.5), (10, True), (10, "10")],
)
def test_stage_rejects_invalid_values(duration, target):
    with pytest.raises(ConfigError):
        Stage(duration=duration, target=target)


def test_stage_from_dict_accepts_both_key_styles():
    assert Stage.from_dict({"duration_seconds": 120, "target_concurrency": 100}) == Stage(120, 100)
    assert Stage.from_dict({"duration": "2m", "target": 100}) == Stage(120, 100)


@pytest.mark.parametrize("raw", [{"duration": 10}, {"target": 3}, "10s:3", None])
def test_stage_from_dict_rejects_incomplete_records(raw):
    with pytest.raises(ConfigError):
        Stage.from_dict(raw)


def test_schedule_requires_a_stage():
    with pytest.raises(ConfigError):
        Schedule([])


def test_schedule_rejects_negative_start_level():
    with pytest.raises(ConfigError):
        Schedule([Stage(10, 1)], start_concurrency=-1)


def test_average_load_profile_levels():
    schedule = _average_load()

    assert schedule.total_duration == 540
    assert schedule.max_concurrency == 200
    assert schedule.concurrency_at(0) == 0
    assert schedule.concurrency_at(60) == 50
    assert schedule.concurrency_at(120) == 100
    assert schedule.concurrency_at(270) == 150
    assert schedule.concurrency_at(420) == 200
    assert schedule.concurrency_at(480) == 150
    assert schedule.concurrency_at(540) == 100


def test_levels_outside_the_run_clamp_to_the_ends():
    schedule = Schedule([Stage(10, 4)], start_concurrency=2)
    assert schedule.concurrency_at(-3) == 2
    assert schedule.concurrency_at(10) == 4
    assert schedule.concurrency_at(1000) == 4


def test_checkpoints_cover_the_whole_run():
    points = list(_average_load().checkpoints(1.0))

    assert len(points) == 541
    assert points[0] == (0.0, 0)
    assert points[-1] == (540, 100)
    assert all(0 <= level <= 200 for _, level in points)


def test_ramp_stages_are_monotonic_and_land_on_target():
    levels = dict(_average_load().checkpoints(1.0))

    ramp_up = [levels[t] for t in range(0, 121)]
    climb = [levels[t] for t in range(120, 421)]
    ramp_down = [levels[t] for t in range(420, 541)]

    assert ramp_up == sorted(ramp_up) and ramp_up[-1] == 100
    assert climb == sorted(climb) and climb[-1] == 200
    assert ramp_down == sorted(ramp_down, reverse=True) and ramp_down[-1] == 100


def test_flat_stage_holds_its_level():
    schedule = Schedule([Stage(10, 5), Stage(20, 5)])
    held = [level for elapsed, level in schedule.checkpoints(1.0) if elapsed >= 10]
    assert set(held) == {5}


def test_checkpoints_end_exactly_on_total_when_tick_does_not_divide():
    points = list(Schedule([Stage(1, 10)]).checkpoints(0.3))
    elapsed = [round(t, 6) for t, _ in points]

    assert elapsed == [0.0, 0.3, 0.6, 0.9, 1.0]
    assert points[-1][1] == 10


@pytest.mark.parametrize("tick", [0, -1, True])
def test_checkpoints_reject_non_positive_ticks(tick):
    with pytest.raises(ConfigError):
        list(Schedule([Stage(1, 1)]).checkpoints(tick))


def test_stage_at_and_describe():
    schedule = _average_load()
    assert schedule.stage_at(0) == 0
    assert schedule.stage_at(119.9) == 0
    assert schedule.stage_at(120) == 1
    assert schedule.stage_at(540) == 2
    assert schedule.describe() == "0 -> 100 over 120s, 100 -> 200 over 300s, 200 -> 100 over 120s"
