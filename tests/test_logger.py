import json
import threading

from shared.logger import ScopeLogger, get_logger


def _read_records(path):
    return [json.loads(line) for line in path.read_text().splitlines()]


def test_json_file_records(tmp_path):
    log_file = tmp_path / "logs" / "objscope.log"
    log = ScopeLogger("test-json", log_level="DEBUG", log_file=log_file,
                      json_logs=True, console_output=False)

    with log.operation("parse"):
        log.debug("decoded %d sections", 3, table="section")
    log.warning("outside")

    first, second = _read_records(log_file)
    assert first["level"] == "DEBUG"
    assert first["logger"] == "objscope.test-json"
    assert first["message"] == "decoded 3 sections"
    assert first["component"] == "test-json"
    assert first["operation"] == "parse"
    assert first["extra"] == {"table": "section"}
    assert second["message"] == "outside"
    assert "operation" not in second


def test_debug_suppressed_below_level(tmp_path):
    log_file = tmp_path / "objscope.log"
    log = ScopeLogger("test-level", log_level="INFO", log_file=log_file,
                      json_logs=True, console_output=False)
    log.debug("hidden")
    log.info("shown")
    assert [r["message"] for r in _read_records(log_file)] == ["shown"]


def test_timed(tmp_path):
    log_file = tmp_path / "objscope.log"
    log = ScopeLogger("test-timed", log_level="DEBUG", log_file=log_file,
                      json_logs=True, console_output=False)
    with log.timed("section table") as timer:
        pass
    assert timer.elapsed >= 0
    messages = [r["message"] for r in _read_records(log_file)]
    assert messages[0] == "Started: section table"
    assert messages[1].startswith("Completed: section table")


def test_handlers_not_duplicated():
    log = ScopeLogger("test-dup")
    log = ScopeLogger("test-dup")
    assert len(log.underlying.handlers) == 1
    assert log.component == "test-dup"


def test_get_logger_uses_config():
    log = get_logger("test-config")
    assert log.underlying.name == "objscope.test-config"
    assert not log.underlying.propagate


def test_operation_is_per_thread(tmp_path):
    log_file = tmp_path / "objscope.log"
    log = ScopeLogger("test-threads", log_level="DEBUG", log_file=log_file,
                      json_logs=True, console_output=False)
    worker_inside = threading.Event()
    main_logged = threading.Event()

    def worker():
        with log.operation("worker"):
            log.debug("from worker")
            worker_inside.set()
            main_logged.wait(timeout=5)

    with log.operation("parse"):
        thread = threading.Thread(target=worker)
        thread.start()
        worker_inside.wait(timeout=5)
        log.debug("from main")
        main_logged.set()
        thread.join()
        log.debug("main after join")

    records = {r["message"]: r.get("operation") for r in _read_records(log_file)}
    assert records == {
        "from worker": "worker",
        "from main": "parse",
        "main after join": "parse",
    }
