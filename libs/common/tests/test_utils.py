from __future__ import annotations

from datetime import datetime

import pytest
from common.utils import normalize_whitespace, now_utc_iso, unique_preserving_order

pytestmark = pytest.mark.unit


def test_now_utc_iso_returns_parseable_utc_timestamp() -> None:
    parsed = datetime.fromisoformat(now_utc_iso())
    assert parsed.tzinfo is not None
    assert parsed.utcoffset() is not None
    assert parsed.utcoffset().total_seconds() == 0


def test_normalize_whitespace_collapses_runs() -> None:
    assert normalize_whitespace("  webhook \n ingest\tservice ") == "webhook ingest service"


def test_unique_preserving_order_drops_repeats_and_blanks() -> None:
    assert unique_preserving_order(["github", "", "python", "github", "main"]) == [
        "github",
        "python",
        "main",
    ]
