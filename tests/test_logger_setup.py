import logging
import logging.handlers
import os

import pytest
from colorama import Fore

from compressit.logger_setup import ColoredFormatter, _cleanup_old_logs, setup_logging


@pytest.fixture
def restore_logging():
    package_logger = logging.getLogger('compressit')
    saved = (list(package_logger.handlers), package_logger.level, package_logger.propagate)
    root_handlers = list(logging.getLogger().handlers)
    yield
    for handler in package_logger.handlers:
        handler.close()
    package_logger.handlers[:] = saved[0]
    package_logger.setLevel(saved[1])
    package_logger.propagate = saved[2]
    logging.getLogger().handlers[:] = root_handlers


def test_setup_logging_writes_files_into_logs_dir(tmp_path, restore_logging):
    logs_dir = tmp_path / 'logs'

    logger = setup_logging(log_level='error', logs_dir=str(logs_dir))
    logging.getLogger('compressit.engine').error("encoder blew up")
    for handler in logger.handlers:
        handler.flush()

    assert logger.name == 'compressit'
    assert (logs_dir / 'compressit.log').exists()
    assert "encoder blew up" in (logs_dir / 'errors.log').read_text(encoding='utf-8')
    console = [h for h in logger.handlers if type(h) is logging.StreamHandler]
    assert console and console[0].level == logging.ERROR
    assert isinstance(console[0].formatter, ColoredFormatter)


def test_missing_config_falls_back_to_builtin(tmp_path, restore_logging):
    logger = setup_logging(config_path=str(tmp_path / 'nope.yaml'), logs_dir=str(tmp_path))
    logger.info("hello")
    for handler in logger.handlers:
        handler.flush()

    assert "hello" in (tmp_path / 'compressit.log').read_text(encoding='utf-8')


def test_colored_formatter_leaves_record_untouched():
    record = logging.makeLogRecord({'levelname': 'WARNING', 'levelno': logging.WARNING, 'msg': 'careful'})

    text = ColoredFormatter('%(levelname)s %(message)s').format(record)

    assert Fore.YELLOW in text
    assert record.levelname == 'WARNING'


def test_cleanup_keeps_newest_rotated_logs(tmp_path):
    for index in range(8):
        path = tmp_path / f'compressit.log.{index}'
        path.write_text('x')
        os.utime(path, (1000 + index, 1000 + index))
    (tmp_path / 'compressit.log').write_text('current')

    _cleanup_old_logs(str(tmp_path), keep_count=5)

    remaining = sorted(p.name for p in tmp_path.iterdir())
    assert remaining == ['compressit.log'] + [f'compressit.log.{i}' for i in range(3, 8)]


@pytest.mark.parametrize("use_packaged", [True, False])
def test_file_handlers_rotate(tmp_path, restore_logging, use_packaged):
    config_path = None if use_packaged else str(tmp_path / 'missing.yaml')

    logger = setup_logging(config_path=config_path, logs_dir=str(tmp_path))

    file_handlers = [h for h in logger.handlers if isinstance(h, logging.FileHandler)]
    assert file_handlers
    for handler in file_handlers:
        assert isinstance(handler, logging.handlers.RotatingFileHandler)
        assert handler.backupCount == 5
        assert handler.maxBytes > 0


def test_rotated_logs_are_trimmed_on_setup(tmp_path, restore_logging):
    for index in range(1, 9):
        path = tmp_path / f'errors.log.{index}'
        path.write_text('x')
        os.utime(path, (1000 + index, 1000 + index))

    setup_logging(logs_dir=str(tmp_path))

    assert len(list(tmp_path.glob('*.log.*'))) == 5
    assert not (tmp_path / 'errors.log.1').exists()
