import json

import pytest

from chatrelay.channels import STATUS_ERROR, STATUS_IDLE, STATUS_QUOTA_EXCEEDED, ChannelRegistry, cooldown_seconds
from chatrelay.config import Settings, fallback_models, load_channels
from chatrelay.models import ApiKey, Channel, ErrorType


class _Clock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


def _channel(cid: str, priority: int, keys: int = 1, models: list[str] | None = None) -> Channel:
    return Channel(
        id=cid,
        name=cid.upper(),
        base_url=f"http://{cid}",
        models=models or ["m"],
        priority=priority,
        keys=[ApiKey(value=f"{cid}-k{i}") for i in range(keys)],
    )


@pytest.mark.parametrize(("errors", "expected"), [(0, 0.0), (1, 30.0), (2, 60.0), (3, 300.0), (9, 300.0)])
def test_cooldown_schedule(errors, expected):
    assert cooldown_seconds(errors) == expected


def test_best_channel_prefers_priority_and_skips_unhealthy():
    clock = _Clock()
    registry = ChannelRegistry([_channel("a", 1), _channel("b", 2), _channel("c", 3, models=["other"])], clock=clock)

    assert registry.best_channel("m").id == "a"
    assert registry.best_channel("missing") is None

    registry.report_error("a", error_type=ErrorType.TIMEOUT)
    assert registry.best_channel("m").id == "b"

    clock.now += 31
    assert registry.best_channel("m").id == "a"


def test_best_channel_relaxes_filters_when_every_channel_is_unhealthy():
    registry = ChannelRegistry([_channel("a", 1), _channel("b", 2)], clock=_Clock())
    registry.report_error("a", error_type=ErrorType.QUOTA)
    registry.report_error("b", error_type=ErrorType.QUOTA)

    assert registry.best_channel("m").id == "a"


def test_wildcard_channel_serves_any_model():
    registry = ChannelRegistry([_channel("a", 1, models=["*"])])

    assert registry.best_channel("anything").id == "a"


def test_least_connection_strategy():
    registry = ChannelRegistry([_channel("a", 1), _channel("b", 2)], strategy="least-connection")
    registry.start_request("a")

    assert registry.best_channel("m").id == "b"

    registry.end_request("a")
    registry.end_request("a")
    assert registry.in_flight("a") == 0
    assert registry.best_channel("m").id == "a"


def test_key_round_robin_skips_disabled_keys():
    channel = _channel("a", 1, keys=3)
    channel.keys[1].enabled = False
    registry = ChannelRegistry([channel])

    picked = [registry.key(channel).key_index for _ in range(4)]

    assert picked == [0, 2, 0, 2]
    assert registry.key(_channel("z", 1, keys=0)).key_index == -1


def test_next_key_skips_tried_keys_and_prefers_fewest_errors():
    channel = _channel("a", 1, keys=3)
    registry = ChannelRegistry([channel], clock=_Clock())

    assert registry.next_key("a", {2}).key_index == 0
    assert registry.next_key("a", {0}).key == "a-k1"

    registry.report_error("a", key_index=1, error_type=ErrorType.TIMEOUT)
    assert registry.next_key("a", {0}).key_index == 2
    assert registry.next_key("a", {0, 2}).key_index == 1
    assert registry.next_key("a", {0, 1, 2}) is None
    assert registry.next_key("unknown", set()) is None


def test_error_reporting_and_recovery():
    registry = ChannelRegistry([_channel("a", 1, keys=2)], clock=_Clock())

    registry.report_error("a", key_index=1, error_type=ErrorType.QUOTA)
    channel = registry.get("a")
    assert channel.status == STATUS_QUOTA_EXCEEDED
    assert channel.keys[1].error_count == 1
    assert channel.last_error_type == "quota"

    registry.report_success("a")
    assert channel.status == STATUS_IDLE
    assert channel.error_count == 0
    assert channel.last_error_time is None


def test_repeated_auth_errors_disable_the_channel():
    registry = ChannelRegistry([_channel("a", 1)], clock=_Clock())

    for _ in range(4):
        registry.report_error("a", error_type=ErrorType.AUTH)
    assert registry.get("a").status == STATUS_IDLE

    registry.report_error("a", error_type=ErrorType.AUTH)
    assert registry.get("a").status == STATUS_ERROR


def test_alternate_channels_exclude_current_and_unhealthy():
    registry = ChannelRegistry([_channel("a", 1), _channel("b", 3), _channel("c", 2), _channel("d", 4)], clock=_Clock())
    registry.report_error("d", error_type=ErrorType.QUOTA)

    assert [ch.id for ch in registry.alternate_channels("m", exclude_id="a")] == ["c", "b"]


def test_report_usage_updates_counters():
    clock = _Clock(50.0)
    registry = ChannelRegistry([_channel("a", 1)], clock=clock)

    registry.report_usage("a", tokens=30)
    registry.report_usage("missing", tokens=30)

    channel = registry.get("a")
    assert (channel.usage_count, channel.usage_tokens, channel.last_used) == (1, 30, 50.0)


def test_load_channels_from_json(tmp_path):
    path = tmp_path / "channels.json"
    path.write_text(
        json.dumps(
            [
                {"id": "a", "base_url": "http://a/v1/", "models": ["m"], "api_key": "single"},
                {
                    "id": "b",
                    "name": "Backup",
                    "base_url": "http://b",
                    "models": ["m"],
                    "priority": 5,
                    "api_keys": [{"key": "k1"}, {"key": "k2", "enabled": False}],
                    "advanced": {"llm": {"temperature": 0.2}},
                },
            ]
        ),
        encoding="utf-8",
    )

    channels = load_channels(path)

    assert channels[0].name == "a"
    assert channels[0].base_url == "http://a/v1"
    assert [k.value for k in channels[0].keys] == ["single"]
    assert [k.enabled for k in channels[1].keys] == [True, False]
    assert channels[1].advanced == {"llm": {"temperature": 0.2}}
    assert load_channels(tmp_path / "missing.json") == []


def test_load_channels_rejects_non_list(tmp_path):
    path = tmp_path / "channels.json"
    path.write_text("{}", encoding="utf-8")

    with pytest.raises(ValueError):
        load_channels(path)


def test_fallback_models_are_parsed_from_env(monkeypatch):
    monkeypatch.setenv("FALLBACK_MODELS", " fb1, ,fb2 ")
    settings = Settings(_env_file=None)

    assert fallback_models(settings) == ["fb1", "fb2"]
