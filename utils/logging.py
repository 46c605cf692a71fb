#!/usr/bin/env python3
import os
import sys
import logging
from pythonjsonlogger import jsonlogger


SUCCESS_LEVEL_NUM = int(os.getenv("LOG_SUCCESS_LEVEL_NUM", "25"))
logging.addLevelName(SUCCESS_LEVEL_NUM, "SUCCESS")


def success(self, message=None, **kwargs):
    """
    Custom log level for SUCCESS events. A job that finishes cleanly logs its outputs at this level as its last record.
    """
    if self.isEnabledFor(SUCCESS_LEVEL_NUM):
        self._log(SUCCESS_LEVEL_NUM, message, (), **kwargs)


logging.Logger.success = success


class JobIDFilter(logging.Filter):
    def __init__(self, job_id: str):
        super().__init__()
        self.job_id = job_id

    def filter(self, record):
        record.job_id = self.job_id
        return True


class CombinationAdapter(logging.LoggerAdapter):
    """
    Tags every record with the scenario/year/policy it belongs to so that
    interleaved records from parallel combinations stay attributable.
    """

    def process(self, msg, kwargs):
        extra = dict(self.extra)
        extra.update(kwargs.get("extra") or {})
        kwargs["extra"] = extra
        return msg, kwargs

    def success(self, message=None, **kwargs):
        message, kwargs = self.process(message, kwargs)
        self.logger.success(message, **kwargs)


def setup_logger(job_id: str) -> logging.Logger:
    """
    Initialize a JSON-format logger writing one record per line to stderr.

    Args:
        job_id: The job identifier (e.g., "raster_aligner", "overlay_scorer", "comparison_runner")

    Returns:
        Configured logger instance
    """
    log = logging.getLogger(job_id)
    if log.handlers:
        return log

    log.setLevel(os.getenv("LOG_LEVEL", "INFO").upper())
    handler = logging.StreamHandler(sys.stderr)
    handler.addFilter(JobIDFilter(job_id))

    fmt = "%(asctime)s %(levelname)s %(job_id)s %(message)s"
    handler.setFormatter(
        jsonlogger.JsonFormatter(
            fmt=fmt,
            datefmt="%Y-%m-%dT%H:%M:%S.%fZ",
            rename_fields={
                "asctime": "timestamp",
                "levelname": "level",
            },
            json_ensure_ascii=False,
        )
    )

    log.addHandler(handler)
    log.propagate = False
    return log


def combination_logger(log: logging.Logger, scenario: str, year: int, policy: str = None) -> CombinationAdapter:
    """Wrap a job logger so each record carries its combination fields."""
    fields = {"scenario": scenario, "year": year}
    if policy is not None:
        fields["policy"] = policy
    return CombinationAdapter(log, fields)
