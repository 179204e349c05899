from __future__ import annotations

from datetime import date, datetime, timezone
from pathlib import Path
from zoneinfo import ZoneInfo

import pytest
import yaml
from croniter import croniter

import cadence

UTC = timezone.utc
NOW = datetime(2026, 10, 18, 12, 0, 0, tzinfo=UTC)


def _base_config(task_overrides: dict | None = None, **defaults: object) -> dict:
    task = {
        "name": "adder",
        "enabled": True,
        "cron": "*/5 * * * *",
        "target": "operator:add",
        "args": [1, 2],
    }
    task.update(task_overrides or {})
    return {
        "version": 1,
        "defaults": {"timezone": "UTC", **defaults},
        "tasks": [task],
    }


def _write_config(tmp_path: Path, config: dict) -> Path:
    path = tmp_path / "cadence.yaml"
    path.write_text(yaml.safe_dump(config, sort_keys=False), encoding="utf-8")
    return path


def test_parse_field_classifies_shapes() -> None:
    assert cadence.parse_field(7) == cadence.Exact(7)
    assert cadence.parse_field([11, 12, 11]) == cadence.Alternation((11, 12))
    assert cadence.parse_field("3-5") == cadence.Range(3, 5)
    assert cadence.parse_field({"from": 2, "to": 6}) == cadence.Range(2, 6)
    assert cadence.parse_field("*") == cadence.Star()
    assert cadence.parse_field("/15") == cadence.Repetition(15)
    assert cadence.parse_field("-5/20") == cadence.ShiftedRepetition(-5, 20)
    assert cadence.parse_field("15/5") == cadence.ShiftedRepetition(15, 5)


@pytest.mark.parametrize("raw", ["abc", "1-", "5-3-1", "/", "*/x", 1.5, None, True, [], ["a"], {"from": 1}])
def test_parse_field_rejects_illegal_shapes(raw: object) -> None:
    with pytest.raises(cadence.RuleError):
        cadence.parse_field(raw)


def test_field_range_requires_increasing_bounds() -> None:
    with pytest.raises(cadence.RuleError, match="needs from < to"):
        cadence.field_range("5-3")
    with pytest.raises(cadence.RuleError, match="needs from < to"):
        cadence.field_range("4-4")
    parsed = cadence.field_range("3-5")
    assert (parsed.start, parsed.end) == (3, 5)


def test_repetition_must_be_positive() -> None:
    with pytest.raises(cadence.RuleError, match="must be > 0"):
        cadence.parse_field("/0")
    with pytest.raises(cadence.RuleError, match="must be > 0"):
        cadence.parse_field("3/0")


def test_field_matching_table() -> None:
    assert cadence.Range(3, 5).matches(5)
    assert not cadence.Range(3, 5).matches(6)
    assert cadence.Repetition(5).matches(10)
    assert not cadence.Repetition(5).matches(11)
    assert cadence.ShiftedRepetition(15, 5).matches(20)
    assert not cadence.ShiftedRepetition(15, 5).matches(21)
    assert cadence.Alternation((1, 7)).matches(7)
    assert cadence.Star().matches(366)


def test_default_rule_is_midnight_every_day() -> None:
    built = cadence.rule()
    assert built is cadence.DEFAULT_RULE
    assert built["hour"] == (cadence.Exact(0),)
    assert built["minute"] == (cadence.Exact(0),)
    assert built["second"] == (cadence.Exact(0),)
    for part in cadence.DATE_PARTS:
        assert built[part] == (cadence.Star(),)


def test_rule_replaces_only_supplied_parts() -> None:
    built = cadence.rule({"month": [3, "6-8"]})
    assert built["month"] == (cadence.Exact(3), cadence.Range(6, 8))
    assert built["day_of_month"] == (cadence.Star(),)
    assert built["hour"] == (cadence.Exact(0),)


def test_rule_accepts_hyphenated_names_and_scalars() -> None:
    left = cadence.rule({"day-of-month": 3, "Week-Of-Year": "/2"})
    right = cadence.rule({"day_of_month": [3], "week_of_year": ["/2"]})
    assert dict(left.parts) == dict(right.parts)


def test_rule_is_read_only() -> None:
    built = cadence.rule({"month": [1]})
    with pytest.raises(TypeError):
        built.parts["month"] = (cadence.Exact(2),)  # type: ignore[index]


@pytest.mark.parametrize(
    "partial, message",
    [
        ({"month": [13]}, "month"),
        ({"month": [0]}, "month"),
        ({"weekday": [0]}, "weekday"),
        ({"day_of_month": ["0-3"]}, "day_of_month"),
        ({"hour": ["1-24"]}, "hour"),
        ({"minute": ["/60"]}, "minute"),
        ({"second": ["55/10"]}, "second"),
        ({"week_of_year": [54]}, "week_of_year"),
        ({"day_of_year": [[1, 367]]}, "day_of_year"),
        ({"month": []}, "cannot be empty"),
        ({"days": [1]}, "Unknown date-part"),
        ({"month": [1], "MONTH": [2]}, "more than once"),
    ],
)
def test_rule_construction_errors_name_the_date_part(partial: dict, message: str) -> None:
    with pytest.raises(cadence.RuleError, match=message):
        cadence.rule(partial)


def test_rule_error_names_the_offending_index() -> None:
    with pytest.raises(cadence.RuleError, match=r"rule\.hour\[1\]"):
        cadence.rule({"hour": [3, 30]})


def test_weekday_numbers_start_on_sunday() -> None:
    assert cadence.weekday_number(date(2026, 10, 18)) == 1  # Sunday
    assert cadence.weekday_number(date(2026, 10, 19)) == 2
    assert cadence.weekday_number(date(2026, 10, 24)) == 7


def test_date_matches_ands_parts_and_ors_fields() -> None:
    built = cadence.rule({"day_of_month": [1, 18], "weekday": [1]})
    assert cadence.date_matches(built, date(2026, 10, 18))
    # Nov 1 2026 matches both parts
    assert cadence.date_matches(built, date(2026, 11, 1))
    assert not cadence.date_matches(built, date(2026, 10, 25))
    assert not cadence.date_matches(built, date(2026, 12, 1))


def test_date_matches_day_and_week_of_year() -> None:
    built = cadence.rule({"day_of_year": [1], "week_of_year": [53]})
    assert cadence.date_matches(built, date(2021, 1, 1))  # ISO week 53 of 2020
    assert not cadence.date_matches(built, date(2022, 1, 1))


def test_time_candidates_are_sorted_unique_union() -> None:
    built = cadence.rule({"minute": ["/15", "10-12", 5, [45, 5]], "second": ["-5/20"]})
    assert cadence.time_candidates(built, "minute") == [0, 5, 10, 11, 15, 30, 45]
    assert cadence.time_candidates(built, "second") == [15, 35, 55]
    assert cadence.time_candidates(built, "hour") == [0]
    assert cadence.time_candidates(cadence.rule({"hour": ["*"]}), "hour") == list(range(24))


def test_simulate_day_of_month() -> None:
    now = datetime(2026, 1, 5, 12, 0, tzinfo=UTC)
    runs = cadence.simulate(cadence.rule({"day_of_month": [3]}), 1, now=now)
    assert runs == [datetime(2026, 2, 3, 0, 0, 0, tzinfo=UTC)]


def test_simulate_is_strictly_after_now_and_ascending() -> None:
    built = cadence.rule({"hour": ["*"], "minute": ["*"], "second": ["/10"]})
    runs = cadence.simulate(built, 20, now=NOW)
    assert runs[0] == datetime(2026, 10, 18, 12, 0, 10, tzinfo=UTC)
    assert len(runs) == 20
    assert all(run > NOW for run in runs)
    assert all(earlier < later for earlier, later in zip(runs, runs[1:]))


def test_simulate_includes_later_times_today() -> None:
    built = cadence.rule({"hour": [6, 18]})
    runs = cadence.simulate(built, 3, now=NOW)
    assert runs == [
        datetime(2026, 10, 18, 18, 0, tzinfo=UTC),
        datetime(2026, 10, 19, 6, 0, tzinfo=UTC),
        datetime(2026, 10, 19, 18, 0, tzinfo=UTC),
    ]


def test_simulate_compound_rule_satisfies_every_part() -> None:
    built = cadence.rule({"day_of_month": ["1-10", "15/5", 28], "month": ["1-2", 6, [11, 12]]})
    runs = cadence.simulate(built, 100, now=NOW)
    assert len(runs) == 100
    for run in runs:
        assert run.month in {1, 2, 6, 11, 12}
        day = run.day
        assert 1 <= day <= 10 or ((day - 15) % 5 == 0 and day >= 15) or day == 28
        assert cadence.date_matches(built, run.date())
    assert all(earlier < later for earlier, later in zip(runs, runs[1:]))


def test_simulate_tolerates_sparse_and_impossible_rules() -> None:
    assert cadence.simulate(cadence.rule({"month": [2], "day_of_month": [30]}), 5, now=NOW) == []
    assert cadence.next_run_after(cadence.rule({"month": [2], "day_of_month": [30]}), NOW) is None

    leap = cadence.simulate(cadence.rule({"month": [2], "day_of_month": [29]}), 3, now=NOW)
    assert leap == [datetime(2028, 2, 29, tzinfo=UTC)]


def test_simulate_non_positive_count() -> None:
    assert cadence.simulate(cadence.rule(), 0, now=NOW) == []
    assert cadence.simulate(cadence.rule(), -1, now=NOW) == []


def test_simulate_naive_now_uses_given_zone() -> None:
    runs = cadence.simulate(cadence.rule(), 1, now=datetime(2026, 10, 18, 12, 0), tz=UTC)
    assert runs == [datetime(2026, 10, 19, tzinfo=UTC)]


def test_simulate_skips_nonexistent_local_times() -> None:
    zone = ZoneInfo("America/New_York")
    built = cadence.rule({"hour": [2], "minute": [30]})
    runs = cadence.simulate(built, 2, now=datetime(2027, 3, 13, 0, 0, tzinfo=zone))
    assert [run.date() for run in runs] == [date(2027, 3, 13), date(2027, 3, 15)]
    assert all(run.tzinfo is zone for run in runs)


def test_simulate_during_repeated_hour_stays_after_now() -> None:
    zone = ZoneInfo("America/New_York")
    # 01:40 EST, the second pass through 01:40 on the night clocks go back.
    now = datetime(2026, 11, 1, 1, 40, tzinfo=zone, fold=1)
    built = cadence.rule({"hour": ["*"], "minute": ["*"]})
    runs = cadence.simulate(built, 3, now=now)
    assert [run.astimezone(UTC) for run in runs] == [
        datetime(2026, 11, 1, 7, 0, tzinfo=UTC),
        datetime(2026, 11, 1, 7, 1, tzinfo=UTC),
        datetime(2026, 11, 1, 7, 2, tzinfo=UTC),
    ]
    assert cadence.next_run_after(built, now).astimezone(UTC) > now.astimezone(UTC)


def test_next_run_after_is_strict() -> None:
    built = cadence.rule({"hour": [12]})
    assert cadence.next_run_after(built, NOW) == datetime(2026, 10, 19, 12, 0, tzinfo=UTC)


def test_parse_cron_translation() -> None:
    assert cadence.parse_cron("0,30 9-17 * JAN,jul sun") == {
        "minute": [[0, 30]],
        "hour": ["9-17"],
        "day_of_month": ["*"],
        "month": [[1, 7]],
        "weekday": [1],
    }
    assert cadence.parse_cron("*/5 1,2-4 * * MON-FRI") == {
        "minute": ["/5"],
        "hour": [1, "2-4"],
        "day_of_month": ["*"],
        "month": ["*"],
        "weekday": ["2-6"],
    }


def test_cron_matches_equivalent_rule() -> None:
    from_cron = cadence.cron("/5 * * 11,12 MON-FRI")
    from_rule = cadence.rule(
        {
            "minute": ["/5"],
            "hour": ["*"],
            "day_of_month": ["*"],
            "month": [[11, 12]],
            "weekday": [{"from": 2, "to": 6}],
        }
    )
    assert dict(from_cron.parts) == dict(from_rule.parts)
    assert cadence.simulate(from_cron, 50, now=NOW) == cadence.simulate(from_rule, 50, now=NOW)


@pytest.mark.parametrize(
    "expr, message",
    [
        ("* * * *", "exactly 5 fields"),
        ("* * * * * *", "got 6"),
        ("* * * * FUNDAY", "Invalid token"),
        ("* * * FEB-MON *", "Invalid token"),
        ("61 * * * *", "minute"),
        ("* * * * 0", "weekday"),
        ("1,,2 * * * *", "Invalid cron token"),
        ("² * * * *", "minute"),
        ("1,² * * * *", "minute"),
    ],
)
def test_cron_errors(expr: str, message: str) -> None:
    with pytest.raises(cadence.CronError, match=message):
        cadence.cron(expr)


def test_cron_errors_are_rule_errors() -> None:
    with pytest.raises(ValueError):
        cadence.cron("* * * 13 *")


@pytest.mark.parametrize(
    "expr",
    [
        "*/15 * * * *",
        "0 9 * * MON-FRI",
        "30 6 1,15 * *",
        "0 0 * FEB *",
        "5 4 * * SUN",
        "0 22 * * SAT,SUN",
    ],
)
def test_cron_previews_agree_with_croniter(expr: str) -> None:
    expected = []
    itr = croniter(expr, NOW)
    for _ in range(12):
        expected.append(itr.get_next(datetime))
    assert cadence.simulate(cadence.cron(expr), 12, now=NOW) == expected


def test_coerce_rule_accepts_every_shape() -> None:
    built = cadence.rule({"hour": [3]})
    assert cadence.coerce_rule(built) is built
    assert cadence.coerce_rule(None) is cadence.DEFAULT_RULE
    assert cadence.coerce_rule("0 3 * * *")["hour"] == (cadence.Exact(3),)
    assert cadence.coerce_rule({"hour": 3})["hour"] == (cadence.Exact(3),)


def test_parse_config_valid(tmp_path: Path) -> None:
    cfg = _base_config()
    cfg["tasks"].append(
        {
            "name": "iterate",
            "rule": {"minute": ["/10"], "hour": ["*"]},
            "target": "builtins:len",
            "args": [[1, 2]],
            "mode": "iterative",
            "enabled": False,
        }
    )
    config = cadence.parse_config(_write_config(tmp_path, cfg))

    assert config.timezone_name == "UTC"
    assert [task.name for task in config.tasks] == ["adder", "iterate"]
    adder, iterate = config.tasks
    assert adder.fn(*adder.args) == 3
    assert adder.mode is cadence.RunMode.CHAIN
    assert adder.source == "cron: */5 * * * *"
    assert iterate.mode is cadence.RunMode.ITERATIVE
    assert iterate.enabled is False
    assert iterate.rule["minute"] == (cadence.Repetition(10),)


def test_parse_config_defaults_mode(tmp_path: Path) -> None:
    config = cadence.parse_config(_write_config(tmp_path, _base_config(mode="iterative")))
    assert config.tasks[0].mode is cadence.RunMode.ITERATIVE


@pytest.mark.parametrize(
    "overrides, message",
    [
        ({"schedule": "daily"}, "Unknown keys in tasks\\[0\\]"),
        ({"rule": {"hour": [1]}}, 'exactly one of "rule" or "cron"'),
        ({"target": "operator.add"}, "must look like"),
        ({"target": "no_such_module_xyz:run"}, "Cannot import module"),
        ({"target": "operator:nope"}, 'has no attribute "nope"'),
        ({"target": "math:pi"}, "is not callable"),
        ({"mode": "forever"}, "tasks\\[0\\].mode"),
        ({"args": "1"}, "args must be a list"),
        ({"enabled": "yes"}, "enabled must be true or false"),
        ({"cron": "* * *"}, "exactly 5 fields"),
    ],
)
def test_parse_config_task_errors(tmp_path: Path, overrides: dict, message: str) -> None:
    config_path = _write_config(tmp_path, _base_config(overrides))
    with pytest.raises(cadence.ConfigError, match=message):
        cadence.parse_config(config_path)


def test_parse_config_rule_errors_carry_field_path(tmp_path: Path) -> None:
    cfg = _base_config()
    del cfg["tasks"][0]["cron"]
    cfg["tasks"][0]["rule"] = {"hour": [25]}
    with pytest.raises(cadence.ConfigError, match=r"tasks\[0\]\.rule\.hour\[0\]"):
        cadence.parse_config(_write_config(tmp_path, cfg))


def test_parse_config_top_level_errors(tmp_path: Path) -> None:
    cfg = _base_config()
    cfg["tasks"].append(dict(cfg["tasks"][0]))
    with pytest.raises(cadence.ConfigError, match='Duplicate task name "adder"'):
        cadence.parse_config(_write_config(tmp_path, cfg))

    cfg = _base_config()
    cfg["defaults"]["timezone"] = "Mars/Olympus"
    with pytest.raises(cadence.ConfigError, match="Invalid timezone"):
        cadence.parse_config(_write_config(tmp_path, cfg))

    cfg = _base_config()
    cfg["jobs"] = []
    with pytest.raises(cadence.ConfigError, match="Unknown top-level keys"):
        cadence.parse_config(_write_config(tmp_path, cfg))

    with pytest.raises(cadence.ConfigError, match="Config file not found"):
        cadence.parse_config(tmp_path / "missing.yaml")

    broken = tmp_path / "broken.yaml"
    broken.write_text("tasks: [\n", encoding="utf-8")
    with pytest.raises(cadence.ConfigError, match="Failed to parse YAML"):
        cadence.parse_config(broken)


def test_build_scheduler_registers_tasks(tmp_path: Path) -> None:
    config = cadence.parse_config(_write_config(tmp_path, _base_config()))
    scheduler = cadence.build_scheduler(config)
    assert scheduler.names() == ["adder"]
    assert scheduler.status("adder") == "idle"
    assert scheduler.tz is config.timezone


def test_command_validate(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    config_path = _write_config(tmp_path, _base_config())
    assert cadence.command_validate(config_path) == 0
    output = capsys.readouterr().out
    assert "Config valid" in output
    assert "Enabled tasks: 1" in output
    assert "- adder: chain -> operator:add (cron: */5 * * * *)" in output


def test_command_preview(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    config_path = _write_config(tmp_path, _base_config())
    assert cadence.command_preview(config_path, task_name="adder", count=3) == 0
    output = capsys.readouterr().out
    assert "Task: adder" in output
    assert "Next 3 run(s):" in output
    assert output.count("\n- 20") == 3

    with pytest.raises(cadence.CadenceError, match='Unknown task "other"'):
        cadence.command_preview(config_path, task_name="other", count=3)


def test_command_run(tmp_path: Path) -> None:
    config_path = _write_config(tmp_path, _base_config())
    assert cadence.command_run(config_path, task_name=None) == 0

    failing = _write_config(tmp_path, _base_config({"target": "math:sqrt", "args": [-1]}))
    assert cadence.command_run(failing, task_name="adder") == 1

    disabled = _write_config(tmp_path, _base_config({"enabled": False}))
    with pytest.raises(cadence.CadenceError, match="No enabled tasks"):
        cadence.command_run(disabled, task_name=None)


def test_command_daemon_exits_when_no_task_can_run(tmp_path: Path) -> None:
    cfg = _base_config()
    del cfg["tasks"][0]["cron"]
    cfg["tasks"][0]["rule"] = {"month": [2], "day_of_month": [31]}
    assert cadence.command_daemon(_write_config(tmp_path, cfg), poll_seconds=1) == 1


def test_command_cron(capsys: pytest.CaptureFixture[str]) -> None:
    assert cadence.command_cron("0 9 * * MON-FRI", count=2) == 0
    output = capsys.readouterr().out
    assert "weekday=2-6" in output
    assert "Next 2 run(s):" in output


def test_main_maps_errors_to_exit_code(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
    capsys: pytest.CaptureFixture[str],
) -> None:
    monkeypatch.setattr(cadence, "setup_logging", lambda log_file=None: cadence.logger)
    config_path = _write_config(tmp_path, _base_config())

    assert cadence.main(["--config", str(config_path), "validate"]) == 0
    assert "Config valid" in capsys.readouterr().out
    assert cadence.main(["validate", "--config", str(tmp_path / "missing.yaml")]) == 1
    assert cadence.main(["cron", "* * *"]) == 1
    assert cadence.main(["--config", str(config_path), "preview", "--count", "0"]) == 1
