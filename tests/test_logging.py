"""
Tests for structured logging.
"""

import logging


def test_setup_adds_handlers(tmp_path, monkeypatch):
    """setup() adds a stderr handler and a rotating file handler."""
    import kgsat.log as log_mod
    monkeypatch.setattr(log_mod, "KGSAT_HOME", tmp_path)
    old_configured = log_mod._configured
    log_mod._configured = False
    old_handlers = log_mod.log.handlers[:]
    log_mod.log.handlers = [logging.NullHandler()]
    try:
        log_mod.setup()
        handler_types = [type(h).__name__ for h in log_mod.log.handlers]
        assert "StreamHandler" in handler_types
        assert "RotatingFileHandler" in handler_types
        assert (tmp_path / "kgsat.log").exists()

        # Second call is a no-op.
        count = len(log_mod.log.handlers)
        log_mod.setup()
        assert len(log_mod.log.handlers) == count
    finally:
        for h in log_mod.log.handlers:
            if h not in old_handlers:
                h.close()
        log_mod.log.handlers = old_handlers
        log_mod._configured = old_configured


def test_library_default_is_silent():
    import kgsat.log as log_mod
    assert any(isinstance(h, logging.NullHandler) for h in log_mod.log.handlers)


def test_timed_context_manager():
    """timed() context manager measures elapsed time."""
    from kgsat.log import timed
    import time
    with timed("test_op") as t:
        time.sleep(0.01)
    assert t.elapsed_ms >= 5  # at least 5ms (generous for CI)


def test_timed_logs_failed_step_and_reraises(caplog):
    import pytest
    from kgsat.log import timed
    caplog.set_level(logging.DEBUG, logger="kgsat")
    with pytest.raises(RuntimeError):
        with timed("merge.index") as t:
            raise RuntimeError("boom")
    assert t.elapsed_ms >= 0
    assert any("merge.index failed after" in r.getMessage() for r in caplog.records)
