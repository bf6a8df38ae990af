from __future__ import annotations

import pytest

from castline.core.errors import InvalidTransitionError
from castline.domain.state import JobStatus, can_transition, ensure_transition, final_status, is_terminal


def test_terminal_statuses() -> None:
    assert is_terminal("completed")
    assert is_terminal("failed")
    assert is_terminal("cancelled")
    assert not is_terminal("pending")
    assert not is_terminal("processing")


def test_retry_is_the_only_way_out_of_failed() -> None:
    assert can_transition("failed", "processing")
    assert not can_transition("failed", "completed")
    assert not can_transition("completed", "processing")
    assert not can_transition("cancelled", "processing")


def test_cancel_allowed_from_pending_and_processing_only() -> None:
    assert can_transition("pending", "cancelled")
    assert can_transition("processing", "cancelled")
    with pytest.raises(InvalidTransitionError):
        ensure_transition("completed", "cancelled")


def test_final_status_flags_any_failure() -> None:
    assert final_status(failed_count=0) is JobStatus.COMPLETED
    assert final_status(failed_count=3) is JobStatus.FAILED
