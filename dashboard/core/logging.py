import logging
import sys

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s [job=%(job)s stage=%(stage)s] - %(message)s"
CONTEXT_DEFAULTS = {"job": "-", "stage": "-"}


class ContextFormatter(logging.Formatter):
    """Fills ``job`` and ``stage`` with ``-`` for records logged without ``ctx()``."""
    def format(self, record):
        for name, default in CONTEXT_DEFAULTS.items():
            if not hasattr(record, name):
                setattr(record, name, default)
        return super().format(record)


def configure_logging(level: int = logging.INFO) -> None:
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(ContextFormatter(LOG_FORMAT))
    logging.basicConfig(level=level, handlers=[handler])


def ctx(job: object = "-", stage: str = "-") -> dict:
    """``extra`` mapping tagging a record with the job key and the stage it was logged from."""
    return {"job": str(job), "stage": stage}
