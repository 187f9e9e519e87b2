import pytest

from fanout_pipeline.config import PipelineConfig, get_env_var
from fanout_pipeline.exceptions import ConfigurationError

REQUIRED = {"INPUT_BUCKET": "in", "OUTPUT_BUCKET": "out"}


def test_defaults_match_deployed_stack():
    config = PipelineConfig.from_env(REQUIRED)

    assert config.input_bucket == "in"
    assert config.output_bucket == "out"
    assert config.version == "2"
    assert config.suffixes == (".jpg", ".jpeg", ".png")
    assert config.batch_size == 10
    assert config.batching_window == 5
    assert config.visibility_timeout == 300
    assert config.retention_period == 4 * 24 * 3600
    assert config.max_receive_count == 5
    assert config.thumbnail_size == (128, 128)


def test_overrides_are_read_from_environment():
    config = PipelineConfig.from_env(
        {**REQUIRED, "SUFFIXES": ".png, .webp", "BATCH_SIZE": "4", "MAX_RECEIVE_COUNT": "0", "LOG_LEVEL": "debug"}
    )

    assert config.suffixes == (".png", ".webp")
    assert config.batch_size == 4
    assert config.max_receive_count is None
    assert config.log_level == "DEBUG"


@pytest.mark.parametrize("missing", ["INPUT_BUCKET", "OUTPUT_BUCKET"])
def test_missing_required_variable_fails_fast(missing):
    env = dict(REQUIRED)
    del env[missing]

    with pytest.raises(ConfigurationError, match=missing):
        PipelineConfig.from_env(env)


@pytest.mark.parametrize(
    "overrides",
    [
        {"BATCH_SIZE": "11"},
        {"BATCH_SIZE": "0"},
        {"BATCH_SIZE": "ten"},
        {"MAX_BATCHING_WINDOW_SECONDS": "301"},
        {"RETENTION_PERIOD_SECONDS": "30"},
        {"SUFFIXES": " , "},
    ],
)
def test_values_outside_provider_limits_are_rejected(overrides):
    with pytest.raises(ValueError):
        PipelineConfig.from_env({**REQUIRED, **overrides})


def test_get_env_var_reads_process_environment(monkeypatch):
    monkeypatch.setenv("SOME_SETTING", "value")

    assert get_env_var("SOME_SETTING") == "value"
    assert get_env_var("SOME_OTHER_SETTING", "fallback") == "fallback"
