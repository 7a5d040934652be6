"""Tests for llamadeploy/log.py and the status-line mirroring in branding."""

import logging

from llamadeploy.branding import ui_print, ui_section
from llamadeploy.log import setup_logging


class TestSetupLogging:
    def teardown_method(self):
        logger = logging.getLogger("llamadeploy")
        for handler in list(logger.handlers):
            logger.removeHandler(handler)
            handler.close()

    def test_status_lines_reach_log_file(self, tmp_path):
        log_file = tmp_path / "deployment.log"
        setup_logging(log_file)

        ui_section("Phase 2: Building llama.cpp")
        ui_print("[green]llama.cpp built successfully[/green]", "success")
        ui_print("Less than 20GB available disk space", "warning")

        text = log_file.read_text()
        assert "INFO: === Phase 2: Building llama.cpp ===" in text
        assert "INFO: llama.cpp built successfully" in text
        assert "[green]" not in text
        assert "WARNING: Less than 20GB available disk space" in text

    def test_status_lines_not_duplicated_on_console(self, tmp_path, capsys):
        setup_logging(tmp_path / "deployment.log")
        ui_print("Cloning llama.cpp repository...")
        assert capsys.readouterr().out.count("Cloning llama.cpp repository...") == 1

    def test_repeated_setup_does_not_stack_handlers(self, tmp_path):
        setup_logging(tmp_path / "a.log")
        logger = setup_logging(tmp_path / "b.log")
        assert len(logger.handlers) == 2

    def test_debug_only_in_file(self, tmp_path, capsys):
        log_file = tmp_path / "deployment.log"
        logger = setup_logging(log_file)
        logging.getLogger("llamadeploy.deploy").debug("Deployment failed")
        assert "DEBUG: Deployment failed" in log_file.read_text()
        assert "Deployment failed" not in capsys.readouterr().out
        assert logger.propagate is False
