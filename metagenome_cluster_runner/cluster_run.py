"""
Per-rank entry point of a cluster run (what mpirun starts on every host).

Rank 0 is the coordinator: it loads the config, broadcasts it, optionally
classifies its own reads, gathers one result per participant and writes the
report. Every other rank is a participant: it receives the config, classifies
its reads and sends back one NodeResult. A barrier after the broadcast makes
sure no rank starts work before all of them hold the config.
"""

from __future__ import annotations

import enum
import logging
import socket
import subprocess
from dataclasses import dataclass

from .aggregator import aggregate
from .channel import broadcast_config, receive_all, send_result
from .config import ClusterConfig, load_config
from .errors import ConfigError, TransportError
from .log import coordinator_logger, get_logger, participant_logger
from .node_runner import NodeResult, Runner, run_local

LOGGER = get_logger("cluster_run")


class Role(enum.Enum):
    COORDINATOR = "coordinator"
    PARTICIPANT = "participant"

    @classmethod
    def for_rank(cls, rank: int) -> "Role":
        return cls.COORDINATOR if rank == 0 else cls.PARTICIPANT


@dataclass(frozen=True)
class RunContext:
    """Everything one process needs for the run; built once per rank."""
    config: ClusterConfig
    rank: int
    size: int
    role: Role
    hostname: str
    logger: logging.Logger


def _run_guarded(cfg: ClusterConfig, hostname: str, logger: logging.Logger,
                 runner: Runner) -> NodeResult:
    # rank 0 waits for exactly one record from every rank, so a crash is a result too
    try:
        return run_local(cfg, hostname, logger, runner)
    except Exception as exc:
        logger.exception("Classification crashed on %s", hostname)
        return NodeResult.failure(hostname, f"unexpected error: {exc}")


def _coordinate(ctx: RunContext, comm, runner: Runner) -> int:
    cfg, logger = ctx.config, ctx.logger
    logger.info("All nodes synchronized. Starting classification...")

    results = []
    if cfg.coordinator_participates:
        own = _run_guarded(cfg, ctx.hostname, logger, runner)
        logger.info("Coordinator completed: %s", "SUCCESS" if own.succeeded else "FAILED")
        results.append(own)
    else:
        logger.info("Coordinator acting as orchestrator only (no local classification).")

    results.extend(receive_all(comm, range(1, ctx.size), progress=cfg.show_progress, logger=logger))

    report = aggregate(cfg, results, ctx.size, logger, runner)
    logger.info("========================================")
    logger.info("Cluster Processing Complete")
    logger.info("Success: %d/%d nodes", report.successes, report.total)
    logger.info("========================================")
    return 0


def run_rank(config_path, comm, verbose: bool = False, hostname: str = None,
             runner: Runner = subprocess.run) -> int:
    """Run this process's part of the cluster job. Returns its exit code."""
    rank, size = comm.Get_rank(), comm.Get_size()
    role = Role.for_rank(rank)
    hostname = hostname or socket.gethostname()

    cfg = None
    logger = LOGGER
    if role is Role.COORDINATOR:
        try:
            cfg = load_config(config_path)
        except ConfigError as exc:
            LOGGER.error("Coordinator failed to load config: %s", exc)
            comm.Abort(1)
            return 1
        logger = coordinator_logger(cfg, verbose)
        logger.info("========================================")
        logger.info("Cluster Run Started")
        logger.info("MPI World Size: %d", size)
        logger.info("========================================")
        if size <= 1:
            logger.warning("MPI world size is %d; no participant processes joined. If "
                           "participants were expected, check that orted is found on the "
                           "remote nodes (--prefix), that the firewall allows MPI ports and "
                           "that OpenMPI versions match across nodes.", size)

    try:
        cfg = broadcast_config(comm, cfg)
    except TransportError as exc:
        logger.error("Config broadcast failed on rank %d: %s", rank, exc)
        comm.Abort(1)
        return 1

    if role is Role.PARTICIPANT:
        logger = participant_logger(rank, hostname, verbose, cfg.log_level)

    ctx = RunContext(config=cfg, rank=rank, size=size, role=role, hostname=hostname, logger=logger)
    comm.Barrier()

    if ctx.role is Role.COORDINATOR:
        return _coordinate(ctx, comm, runner)

    send_result(comm, _run_guarded(cfg, hostname, logger, runner))
    return 0
