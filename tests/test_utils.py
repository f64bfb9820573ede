"""Tests for shared helpers and settings validation."""

import pytest
from pydantic import ValidationError

from colloquy.core.schemas import ChannelTarget, ConversationKey, SessionTarget, target_for
from colloquy.utils import excerpt, normalize_query
from conftest import make_settings

# ---------------------------------------------------------------------------
# normalize_query()
# ---------------------------------------------------------------------------


def test_normalize_collapses_case_and_whitespace():
    assert normalize_query("  Weather   in\tTokyo ") == "weather in tokyo"


def test_normalize_strips_edge_punctuation():
    assert normalize_query('"Weather in Tokyo?"') == "weather in tokyo"


def test_normalize_keeps_inner_punctuation():
    assert normalize_query("C++ vs. Rust") == "c++ vs. rust"


# ---------------------------------------------------------------------------
# excerpt()
# ---------------------------------------------------------------------------


def test_excerpt_short_text_unchanged():
    assert excerpt("short", 50) == "short"


def test_excerpt_cut_with_ellipsis():
    assert excerpt("a" * 60, 50) == "a" * 50 + "..."


def test_excerpt_flattens_newlines():
    assert excerpt("line one\nline two", 50) == "line one line two"


# ---------------------------------------------------------------------------
# Conversation keys and targets
# ---------------------------------------------------------------------------


def test_channel_key_targets_channel():
    key = ConversationKey.for_channel("telegram", "-100")
    assert key.is_channel_level
    assert target_for(key) == ChannelTarget("-100")
    assert str(key) == "telegram:-100:channel--100"


def test_thread_key_targets_session():
    key = ConversationKey.for_channel("telegram", "-100").with_session("9")
    assert not key.is_channel_level
    target = target_for(key)
    assert target == SessionTarget("-100", "9")
    assert target.channel_key == "9"


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


def test_settings_defaults():
    settings = make_settings()
    assert settings.context_window_size == 20
    assert settings.summary_trigger == 30
    assert settings.chunk_max_length == 1900
    assert settings.approval_timeout == 300.0
    assert settings.db_url == "sqlite+aiosqlite://"


def test_settings_postgres_url_from_parts():
    settings = make_settings(database_url="", DB_HOST="db", DB_PORT=5433, DB_NAME="colloquy")
    assert settings.db_url.startswith("postgresql+asyncpg://")
    assert settings.db_url.endswith("@db:5433/colloquy")


def test_settings_reject_tiny_chunk_limit():
    with pytest.raises(ValidationError):
        make_settings(chunk_max_length=50)


def test_settings_reject_pressure_retention_above_retention():
    with pytest.raises(ValidationError):
        make_settings(result_retention=600, result_pressure_retention=1200)


def test_requires_approval_respects_exemptions():
    settings = make_settings(approval_exempt_channels=["trusted"])
    assert settings.requires_approval("general")
    assert not settings.requires_approval("trusted")
    assert not make_settings(require_action_approval=False).requires_approval("general")
