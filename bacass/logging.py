import logging

log_formatter = logging.Formatter("[bacass] %(message)s")
log_handler = logging.StreamHandler()
log_handler.setFormatter(log_formatter)

logger = logging.getLogger("bacass")
logger.setLevel(logging.INFO)
logger.addHandler(log_handler)

log_levels = {
    "ERROR": logging.ERROR,
    "WARN": logging.WARN,
    "INFO": logging.INFO,
    "DEBUG": logging.DEBUG,
}
