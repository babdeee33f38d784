from __future__ import annotations

import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path

from companion_bridge.config.loader import BridgeLoggingConfig
from companion_bridge.observability.error_log import PACKAGE_LOGGER, configure_error_log


def _bridge_handlers() -> list[RotatingFileHandler]:
    """包 logger 上挂载的 error log handler。"""

    return [
        h
        for h in logging.getLogger(PACKAGE_LOGGER).handlers
        if isinstance(h, RotatingFileHandler) and getattr(h, "_bridge_error_log", False)
    ]


def test_error_log_writes_blocks_for_errors_only(tmp_path: Path) -> None:
    path = configure_error_log(BridgeLoggingConfig(error_log_path=str(tmp_path / "bridge_errors.log")), label="companion_worker")

    log = logging.getLogger("companion_bridge.worker.handlers")
    log.warning("not recorded")
    log.error("Whisper Transcription Error: %s", "bad audio")

    text = path.read_text(encoding="utf-8")
    assert "not recorded" not in text
    assert text.startswith("companion_worker Error at ")
    assert "Whisper Transcription Error: bad audio\n" in text
    assert text.rstrip("\n").endswith("=" * 74)


def test_error_log_rotates_at_size_limit(tmp_path: Path) -> None:
    cfg = BridgeLoggingConfig(error_log_path=str(tmp_path / "bridge_errors.log"), max_bytes=1024, backup_count=2)
    path = configure_error_log(cfg, label="Host")

    log = logging.getLogger("companion_bridge.host.contexts")
    for i in range(20):
        log.error("failure %02d %s", i, "x" * 200)

    assert path.exists()
    assert Path(f"{path}.1").exists()
    assert Path(f"{path}.2").exists()
    assert not Path(f"{path}.3").exists()


def test_reconfigure_replaces_previous_handler(tmp_path: Path) -> None:
    first = configure_error_log(BridgeLoggingConfig(), label="Host", path=tmp_path / "first.log")
    second = configure_error_log(BridgeLoggingConfig(), label="Host", path=tmp_path / "nested" / "second.log")

    assert len(_bridge_handlers()) == 1
    logging.getLogger("companion_bridge.host.session").error("only in second")

    assert "only in second" not in first.read_text(encoding="utf-8")
    assert "only in second" in second.read_text(encoding="utf-8")
