"""Unit tests for the logging helpers."""

import logging

import pytest
import structlog

from ctxmem.config.models import LoggingConfig
from ctxmem.context.tier_loader import HierarchicalTierLoader
from ctxmem.utils.logger import (
    bind_log_context,
    clear_log_context,
    configure_library_logging,
    get_logger,
    log_execution,
    setup_logging,
)


@pytest.fixture
def restore_logging():
    yield
    logging.basicConfig(handlers=[logging.NullHandler()], level=logging.WARNING, force=True)
    configure_library_logging()
    clear_log_context()


class TestLogging:
    def test_json_file_output(self, tmp_path, restore_logging):
        log_file = tmp_path / "logs" / "ctxmem.log"
        setup_logging(LoggingConfig(level="INFO", format="json", file=str(log_file), console=False))

        get_logger("ctxmem.test").info("Context compressed", extra={"context_id": "ctx-1"})
        for handler in logging.getLogger().handlers:
            handler.flush()

        content = log_file.read_text(encoding="utf-8")
        assert "Context compressed" in content
        assert "ctx-1" in content

    def test_bound_context(self, restore_logging):
        clear_log_context()
        bind_log_context(session_id="s-1", project_key="proj-A")
        assert structlog.contextvars.get_contextvars() == {"session_id": "s-1", "project_key": "proj-A"}

        clear_log_context()
        assert structlog.contextvars.get_contextvars() == {}

    def test_log_execution_sync(self):
        @log_execution
        def add(a, b):
            return a + b

        assert add(2, 3) == 5
        assert add.__name__ == "add"

    @pytest.mark.asyncio
    async def test_log_execution_reraises(self):
        @log_execution
        async def fail():
            raise RuntimeError("boom")

        with pytest.raises(RuntimeError):
            await fail()


class TestLibraryDefaults:
    """Nothing is written before the host configures logging."""

    @pytest.mark.asyncio
    async def test_reads_print_nothing_without_setup(
        self, store, clock, make_record, capsys, restore_logging
    ):
        configure_library_logging()
        logging.root.setLevel(logging.DEBUG)

        loader = HierarchicalTierLoader(store, clock=clock)
        await store.save(make_record("a", at=clock()))
        await loader.get("a")
        await loader.get("a")

        captured = capsys.readouterr()
        assert captured.out == ""
        assert captured.err == ""

    def test_package_logger_has_null_handler(self):
        configure_library_logging()
        configure_library_logging()
        handlers = logging.getLogger("ctxmem").handlers
        assert sum(isinstance(h, logging.NullHandler) for h in handlers) == 1


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
