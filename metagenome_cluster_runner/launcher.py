"""
Coordinator-side preflight and launch.

Preflight is a strict gate. The run only starts when every participant that
has reads is reachable over passwordless SSH, has the classifier binary and
can import this package with the interpreter mpirun will start,
because a node that drops out mid-run cannot be replaced:

  START -> LOAD_CONFIG -> BUILD_HOST_LIST -> CHECK_CONNECTIVITY -> CHECK_BINARY -> READY

Any step after START can end in ABORTED instead. From READY the host file
goes to mpirun, which starts one ``python -m metagenome_cluster_runner worker``
process per host (rank order = host file order, coordinator first).
"""

from __future__ import annotations

import enum
import logging
import shlex
import shutil
import subprocess
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

from .config import ClusterConfig, load_config
from .errors import ConfigError, LaunchError
from .log import get_logger
from .node_runner import Runner

LOGGER = get_logger("launcher")


class PreflightState(enum.Enum):
    START = "start"
    LOAD_CONFIG = "load_config"
    BUILD_HOST_LIST = "build_host_list"
    CHECK_CONNECTIVITY = "check_connectivity"
    CHECK_BINARY = "check_binary"
    READY = "ready"
    ABORTED = "aborted"


@dataclass
class PreflightOutcome:
    state: PreflightState = PreflightState.START
    config: Optional[ClusterConfig] = None
    hosts: List[str] = field(default_factory=list)
    hostfile: Optional[Path] = None
    message: str = ""
    trail: List[PreflightState] = field(default_factory=lambda: [PreflightState.START])

    @property
    def ready(self) -> bool:
        return self.state is PreflightState.READY

    def advance(self, state: PreflightState):
        self.state = state
        self.trail.append(state)

    def abort(self, message: str) -> "PreflightOutcome":
        self.message = message
        self.advance(PreflightState.ABORTED)
        return self


def ssh_argv(host: str, timeout: int, remote: str) -> List[str]:
    return ["ssh", "-o", "BatchMode=yes", "-o", f"ConnectTimeout={timeout}", host, remote]


def write_hostfile(hosts: List[str], path: Path) -> Path:
    """One ``<host> slots=1`` line per host, in rank order."""
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("".join(f"{host} slots=1\n" for host in hosts))
    return path


def check_connectivity(host: str, cfg: ClusterConfig, runner: Runner = subprocess.run,
                       logger: logging.Logger = LOGGER) -> bool:
    try:
        proc = runner(ssh_argv(host, cfg.ssh_timeout, "hostname"),
                      capture_output=True, text=True, check=False)
    except OSError as exc:
        logger.error("  %s: FAILED (could not run ssh: %s)", host, exc)
        return False
    output = (proc.stdout or "").strip() + (proc.stderr or "").strip()
    if proc.returncode != 0:
        logger.error("  %s: FAILED (ssh output: %s)", host, output)
        return False
    logger.info("  %s: OK (hostname=%s)", host, (proc.stdout or "").strip())
    return True


def check_binary(host: str, cfg: ClusterConfig, runner: Runner = subprocess.run,
                 logger: logging.Logger = LOGGER) -> bool:
    remote = f"test -x {shlex.quote(str(cfg.classifier_path))}"
    try:
        proc = runner(ssh_argv(host, cfg.ssh_timeout, remote),
                      capture_output=True, text=True, check=False)
    except OSError as exc:
        logger.error("  %s: could not run ssh: %s", host, exc)
        return False
    if proc.returncode != 0:
        logger.error("  %s: classifier not found: %s", host, cfg.classifier_path)
        return False
    logger.info("  %s: binary OK", host)
    return True


def check_worker(host: str, cfg: ClusterConfig, python: Optional[str] = None,
                 runner: Runner = subprocess.run, logger: logging.Logger = LOGGER) -> bool:
    """The interpreter mpirun will start on host can import this package from install_dir."""
    python = python or sys.executable
    remote = (f"cd {shlex.quote(cfg.install_dir)} && {shlex.quote(python)} "
              f"-c {shlex.quote('import metagenome_cluster_runner')}")
    try:
        proc = runner(ssh_argv(host, cfg.ssh_timeout, remote),
                      capture_output=True, text=True, check=False)
    except OSError as exc:
        logger.error("  %s: could not run ssh: %s", host, exc)
        return False
    if proc.returncode != 0:
        logger.error("  %s: %s cannot import metagenome_cluster_runner: %s",
                     host, python, (proc.stderr or "").strip())
        return False
    logger.info("  %s: worker OK", host)
    return True


def preflight(config_path, runner: Runner = subprocess.run,
              logger: logging.Logger = LOGGER, python: Optional[str] = None) -> PreflightOutcome:
    """Run the preflight state machine; the outcome ends READY or ABORTED."""
    outcome = PreflightOutcome()

    outcome.advance(PreflightState.LOAD_CONFIG)
    try:
        cfg = load_config(config_path)
    except ConfigError as exc:
        return outcome.abort(f"failed to load configuration: {exc}")
    outcome.config = cfg

    outcome.advance(PreflightState.BUILD_HOST_LIST)
    if not cfg.has_work():
        return outcome.abort("no nodes have reads configured")
    outcome.hosts = cfg.host_list()
    try:
        outcome.hostfile = write_hostfile(outcome.hosts, cfg.hostfile_path)
    except OSError as exc:
        return outcome.abort(f"could not write host file {cfg.hostfile_path}: {exc}")
    logger.info("Nodes to use: %d (%s); host file %s",
                len(outcome.hosts), ", ".join(outcome.hosts), outcome.hostfile)

    # hosts without reads are not in the list and are never contacted
    workers = cfg.active_participants()

    outcome.advance(PreflightState.CHECK_CONNECTIVITY)
    logger.info("Pre-launch connectivity check:")
    for host in workers:
        if not check_connectivity(host, cfg, runner, logger):
            return outcome.abort(f"cannot SSH to {host}; MPI requires passwordless SSH")

    outcome.advance(PreflightState.CHECK_BINARY)
    for host in workers:
        if not check_binary(host, cfg, runner, logger):
            return outcome.abort(f"classifier not found on {host}: {cfg.classifier_path}")
        if not check_worker(host, cfg, python, runner, logger):
            return outcome.abort(f"worker package not importable on {host} "
                                 f"with {python or sys.executable}")

    outcome.advance(PreflightState.READY)
    return outcome


def resolve_config_path(config_path, cfg: ClusterConfig) -> Path:
    """Absolute path rank 0 can open; relative paths not found here live under install_dir."""
    path = Path(config_path)
    if path.is_absolute():
        return path
    if path.exists():
        return path.resolve()
    return Path(cfg.install_dir) / path


def mpi_prefix(mpirun: str) -> str:
    # remote orted is found through --prefix
    return str(Path(mpirun).parent.parent)


def mpirun_argv(cfg: ClusterConfig, hostfile: Path, n_procs: int, command: List[str],
                mpirun: Optional[str] = None) -> List[str]:
    mpirun = mpirun or shutil.which("mpirun")
    if not mpirun:
        raise LaunchError("mpirun not found on PATH")
    return [
        mpirun,
        "--hostfile", str(hostfile),
        "-np", str(n_procs),
        "--wdir", cfg.install_dir,
        "--map-by", "node",
        "--mca", "btl_tcp_if_include", cfg.network_interface,
        "-x", "PATH", "-x", "LD_LIBRARY_PATH",
        "--prefix", mpi_prefix(mpirun),
        *command,
    ]


def worker_command(config_path: Path, verbose: bool, python: Optional[str] = None) -> List[str]:
    argv = [python or sys.executable, "-m", "metagenome_cluster_runner", "worker", "-c", str(config_path)]
    if verbose:
        argv.append("-v")
    return argv


def launch(config_path, verbose: bool = False, runner: Runner = subprocess.run,
           logger: logging.Logger = LOGGER, mpirun: Optional[str] = None) -> int:
    """Preflight, then start one worker per host through mpirun. Returns an exit code."""
    logger.info("Loading configuration from: %s", config_path)
    outcome = preflight(config_path, runner, logger)
    if not outcome.ready:
        logger.error("Preflight aborted: %s", outcome.message)
        return 1

    cfg = outcome.config
    command = worker_command(resolve_config_path(config_path, cfg), verbose)
    try:
        argv = mpirun_argv(cfg, outcome.hostfile, len(outcome.hosts), command, mpirun)
    except LaunchError as exc:
        logger.error("%s", exc)
        return 1

    logger.info("Launching: %s", shlex.join(argv))
    try:
        rc = runner(argv, check=False).returncode
    except OSError as exc:
        logger.error("Could not start mpirun: %s", exc)
        return 1
    if rc != 0:
        logger.error("mpirun exited with code %d", rc)
    return rc


def describe_config(cfg: ClusterConfig) -> str:
    """Human-readable summary printed by the ``check`` command."""
    lines = [
        f"Coordinator: {cfg.coordinator}",
        f"Participants: {' '.join(cfg.participants)}",
        f"Database: {cfg.database}",
        f"Batch size: {cfg.batch_size}",
        f"K-mer size: {cfg.kmer_size}",
        "",
        "Reads configuration:",
    ]
    for host, paths in cfg.reads.items():
        mode = "paired-end" if len(paths) == 2 else "single-end"
        lines.append(f"  {host}: {len(paths)} file(s) ({mode})")
        lines += [f"    - {p}" for p in paths]

    options = [
        ("min_freq_target", cfg.min_freq_target),
        ("num_threads", cfg.num_threads),
        ("num_devices", cfg.num_devices),
        ("gap_iteration", cfg.gap_iteration),
        ("sampling_factor", cfg.sampling_factor),
        ("tsk", cfg.tsk or None),
        ("extended", cfg.extended or None),
        ("gzipped", cfg.gzipped or None),
        ("verbose", cfg.verbose or None),
    ]
    lines += ["", "Classification options:"]
    lines += [f"  {name}: {str(value).lower() if isinstance(value, bool) else value}"
              for name, value in options if value is not None]
    return "\n".join(lines)


def mpi_smoke_test(outcome: PreflightOutcome, runner: Runner = subprocess.run,
                   logger: logging.Logger = LOGGER, mpirun: Optional[str] = None) -> bool:
    """Run ``hostname`` on every host through mpirun."""
    cfg = outcome.config
    mpirun = mpirun or shutil.which("mpirun")
    if not mpirun:
        logger.error("mpirun not found on PATH")
        return False
    argv = [mpirun, "--hostfile", str(outcome.hostfile), "-np", str(len(outcome.hosts)),
            "--wdir", cfg.install_dir, "--mca", "btl_tcp_if_include", cfg.network_interface,
            "hostname"]
    logger.info("Running: %s", shlex.join(argv))
    try:
        rc = runner(argv, check=False).returncode
    except OSError as exc:
        logger.error("Could not start mpirun: %s", exc)
        return False
    return rc == 0
