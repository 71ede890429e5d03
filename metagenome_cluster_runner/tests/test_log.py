import logging

from metagenome_cluster_runner.log import participant_logger


def test_participant_logger_uses_configured_level():
    logger = participant_logger(7, "w7", level="WARNING")
    assert logger.name == "participant.7@w7"
    assert logger.level == logging.WARNING
    assert not logger.isEnabledFor(logging.INFO)


def test_verbose_participant_logs_debug():
    assert participant_logger(8, "w8", verbose=True, level="ERROR").level == logging.DEBUG
