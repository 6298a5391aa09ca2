import pytest
from pydantic import ValidationError

from config.pipeline_config import PipelineConfig
from services.media.models import (
    STREAM_TRANSITIONS,
    AgeBracket,
    StreamConfig,
    StreamRequest,
    StreamSession,
    StreamStatus,
    TimeRange,
)


def test_terminal_states_allow_no_transitions():
    for status in StreamStatus:
        assert status.is_terminal == (STREAM_TRANSITIONS[status] == frozenset())
    assert StreamStatus.ACTIVE not in STREAM_TRANSITIONS[StreamStatus.ENDED]
    assert StreamStatus.PAUSED not in STREAM_TRANSITIONS[StreamStatus.WAITING]


def test_time_range_validation():
    assert TimeRange(start=1.0, end=1.0).contains(1.0)
    assert not TimeRange(start=1.0, end=2.0).contains(2.5)
    with pytest.raises(ValidationError):
        TimeRange(start=5.0, end=1.0)
    with pytest.raises(ValidationError):
        TimeRange(start=-1.0, end=1.0)


def test_stream_request_validation():
    request = StreamRequest(stream_name="lobby", config={"analysis_interval": 15})
    assert request.config.analysis_interval == 15
    assert request.config.enable_analysis

    with pytest.raises(ValidationError):
        StreamRequest(stream_name="")
    with pytest.raises(ValidationError):
        StreamConfig(analysis_interval=0)
    with pytest.raises(ValidationError):
        StreamConfig(frame_rate=0)


def test_session_snapshot_is_detached():
    session = StreamSession(stream_key="k", media_item_id="m", ingest_url="i", playback_url="p")
    snapshot = session.snapshot()
    session.status = StreamStatus.ACTIVE

    assert snapshot.status == StreamStatus.WAITING
    assert session.to_dict()["status"] == StreamStatus.ACTIVE


def test_age_bracket_estimates():
    assert [b.estimated_age for b in AgeBracket] == [10, 16, 35, 65]


def test_config_summary_masks_api_key(monkeypatch):
    monkeypatch.setattr(PipelineConfig, "GEMINI_API_KEY", "secret")
    summary = PipelineConfig.get_summary()

    assert summary["GEMINI_API_KEY"] == "***"
    assert summary["FRAME_SAMPLING_INTERVAL"] == PipelineConfig.FRAME_SAMPLING_INTERVAL
