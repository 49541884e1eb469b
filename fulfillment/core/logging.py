import logging
import sys
from pythonjsonlogger import jsonlogger

from fulfillment.core.config import settings


class FulfillmentJsonFormatter(jsonlogger.JsonFormatter):
    """Adds the service name to every record; ``order_id`` passed via ``extra`` lands as its own field."""

    def add_fields(self, log_record: dict, record: logging.LogRecord, message_dict: dict) -> None:
        super().add_fields(log_record, record, message_dict)
        log_record["service"] = settings.service_name


def build_formatter() -> FulfillmentJsonFormatter:
    return FulfillmentJsonFormatter(
        "%(asctime)s %(name)s %(levelname)s %(message)s",
        rename_fields={"asctime": "timestamp", "levelname": "level", "name": "logger"}
    )


def setup_logging() -> None:
    logger = logging.getLogger()
    logger.setLevel(settings.log_level)

    for handler in list(logger.handlers):
        if isinstance(handler.formatter, FulfillmentJsonFormatter):
            logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(build_formatter())
    logger.addHandler(handler)

    logging.getLogger("aio_pika").setLevel(logging.WARNING)
    logging.getLogger("aiormq").setLevel(logging.WARNING)
