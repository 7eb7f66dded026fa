import logging
import os

# SEAMLOOP_LOG_DIR overrides the default of a logs/ folder beside the sources
LOG_DIR = os.environ.get('SEAMLOOP_LOG_DIR') or os.path.join(os.path.dirname(__file__), '..', 'logs')
LOG_DIR = os.path.abspath(LOG_DIR)

LOG_FILE = os.path.join(LOG_DIR, 'seamloop.log')

# Application logger; engine modules log under 'loop_engine.*' and are
# routed here by configure()
logger = logging.getLogger('seamloop')
logger.setLevel(logging.INFO)

formatter = logging.Formatter('%(asctime)s | %(levelname)s | %(name)s | %(message)s')

# Stream handler (console)
sh = logging.StreamHandler()
sh.setLevel(logging.INFO)
sh.setFormatter(formatter)

if not logger.handlers:
    logger.addHandler(sh)

# File handler, created on first use so importing never touches the disk
fh = None


def _file_handler():
    global fh
    if fh is None:
        os.makedirs(LOG_DIR, exist_ok=True)
        fh = logging.FileHandler(LOG_FILE)
        fh.setLevel(logger.level)
        fh.setFormatter(formatter)
        logger.addHandler(fh)
    return fh


def get_logger():
    _file_handler()
    return logger


def configure(level=logging.INFO):
    """Set the log level and attach the seamloop handlers to the engine logger."""
    if isinstance(level, str):
        name = level
        level = logging.getLevelName(name.upper())
        if not isinstance(level, int):
            raise ValueError(f"Unknown log level: {name}")

    engine_logger = logging.getLogger('loop_engine')
    for target in (logger, engine_logger):
        target.setLevel(level)
    for handler in (_file_handler(), sh):
        handler.setLevel(level)
        if handler not in engine_logger.handlers:
            engine_logger.addHandler(handler)
    return logger
