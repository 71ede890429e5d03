"""
Cluster configuration for distributed read classification.

The configuration file is INI-like:

    [cluster]
    coordinator = jn00
    participants = jn01, jn02, jn03

    [paths]
    install_dir = /home/pathogen/classifier
    database = /home/pathogen/classifier_db
    results_dir = results

    [reads]
    # hostname = path (single-end) or path1, path2 (paired-end)
    jn00 = /data/reads/sample_00.fastq
    jn01 = /data/reads/s1_R1.fastq, /data/reads/s1_R2.fastq

    [classification]
    kmer_size = 31
    batch_size = 32

Only the coordinator reads this file. Every other rank receives the validated
ClusterConfig over the MPI broadcast, so this is the single place where the
static topology is checked.
"""

from __future__ import annotations

import configparser
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Dict, List, Mapping, Optional, Tuple

from .errors import ConfigError, MissingFieldError

# Classifier defaults
KMER_SIZE_DEFAULT = 31
BATCH_SIZE_DEFAULT = 32

RESULTS_DIR_DEFAULT = "results"
LOG_FILE_DEFAULT = "cluster_run.log"
LOG_LEVEL_DEFAULT = "INFO"

# MPI traffic is pinned to the wired interface of the edge boards
NETWORK_INTERFACE_DEFAULT = "eth0"
SSH_TIMEOUT_DEFAULT = 5

# Layout below install_dir; identical on every node (shared or mirrored)
CLASSIFIER_BIN = "bin/arda"
LOGS_DIR = "logs"
HOSTFILE_NAME = "config/mpi_hostfile.txt"
MERGED_ABUNDANCE_NAME = "cluster_abundance_merged.txt"
REPORT_NAME = "cluster_report.txt"
SUMMARY_NAME = "cluster_summary.parquet"

_LOG_LEVELS = {
    "debug": "DEBUG",
    "info": "INFO",
    "warn": "WARNING",
    "warning": "WARNING",
    "error": "ERROR",
}
_TRUE = ("true", "yes", "on", "1")
_FALSE = ("false", "no", "off", "0")


@dataclass(frozen=True)
class ClusterConfig:
    """Validated cluster topology, shared paths and classification settings."""
    coordinator: str
    participants: Tuple[str, ...]
    install_dir: str
    database: str
    results_dir: str = RESULTS_DIR_DEFAULT
    # hostname -> 1 path (single-end) or 2 paths (paired-end); read-only, left out of hash()
    reads: Mapping[str, Tuple[str, ...]] = field(default_factory=dict, hash=False)

    kmer_size: int = KMER_SIZE_DEFAULT
    batch_size: int = BATCH_SIZE_DEFAULT
    min_freq_target: Optional[int] = None
    num_threads: Optional[int] = None
    num_devices: Optional[int] = None
    gap_iteration: Optional[int] = None
    sampling_factor: Optional[str] = None
    tsk: bool = False
    extended: bool = False
    gzipped: bool = False
    verbose: bool = False

    coordinator_participates: bool = True
    keep_local_results: bool = True

    log_level: str = LOG_LEVEL_DEFAULT
    log_file: str = LOG_FILE_DEFAULT
    show_progress: bool = True

    network_interface: str = NETWORK_INTERFACE_DEFAULT
    ssh_timeout: int = SSH_TIMEOUT_DEFAULT

    def __post_init__(self):
        object.__setattr__(self, "reads", MappingProxyType(dict(self.reads)))

    @property
    def results_path(self) -> Path:
        return Path(self.install_dir) / self.results_dir

    @property
    def log_path(self) -> Path:
        return Path(self.install_dir) / LOGS_DIR / self.log_file

    @property
    def hostfile_path(self) -> Path:
        return Path(self.install_dir) / HOSTFILE_NAME

    @property
    def classifier_path(self) -> Path:
        return Path(self.install_dir) / CLASSIFIER_BIN

    @property
    def merged_abundance_path(self) -> Path:
        return self.results_path / MERGED_ABUNDANCE_NAME

    @property
    def report_path(self) -> Path:
        return self.results_path / REPORT_NAME

    @property
    def summary_path(self) -> Path:
        return self.results_path / SUMMARY_NAME

    def inputs_for(self, hostname: str) -> Tuple[str, ...]:
        return self.reads.get(hostname, ())

    def active_participants(self) -> List[str]:
        """Participants with reads assigned, in declared order."""
        return [h for h in self.participants
                if h != self.coordinator and self.inputs_for(h)]

    def coordinator_works(self) -> bool:
        return self.coordinator_participates and bool(self.inputs_for(self.coordinator))

    def host_list(self) -> List[str]:
        """Hosts in rank order: the coordinator is always rank 0."""
        return [self.coordinator] + self.active_participants()

    def has_work(self) -> bool:
        return bool(self.active_participants()) or self.coordinator_works()


def _split_csv(value: Optional[str]) -> List[str]:
    if not value:
        return []
    return [tok.strip() for tok in value.split(",") if tok.strip()]


def _get(parser: configparser.ConfigParser, section: str, key: str,
         default: Optional[str] = None) -> Optional[str]:
    value = parser.get(section, key, fallback=None)
    if value is None:
        return default
    value = value.strip()
    return value if value else default


def _get_int(parser, section: str, key: str, default: Optional[int]) -> Optional[int]:
    raw = _get(parser, section, key)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigError(f"{section}.{key}",
                          f"{section}.{key} must be an integer, got {raw!r}") from None


def _get_optional_int(parser, section: str, key: str) -> Optional[int]:
    # negative values mean "unset", as in the classifier's own option parser
    value = _get_int(parser, section, key, None)
    if value is None or value < 0:
        return None
    return value


def _get_bool(parser, section: str, key: str, default: bool) -> bool:
    raw = _get(parser, section, key)
    if raw is None:
        return default
    lowered = raw.lower()
    if lowered in _TRUE:
        return True
    if lowered in _FALSE:
        return False
    raise ConfigError(f"{section}.{key}",
                      f"{section}.{key} must be a boolean (true/false), got {raw!r}")


def _read_parser(path: Path) -> configparser.ConfigParser:
    parser = configparser.ConfigParser(
        interpolation=None,
        strict=False,
        comment_prefixes=("#", ";"),
    )
    # hostnames and keys are case-sensitive
    parser.optionxform = str
    try:
        with open(path) as fh:
            parser.read_file(fh, source=str(path))
    except OSError as exc:
        raise ConfigError("file", f"cannot read config file {path}: {exc}") from exc
    except configparser.Error as exc:
        raise ConfigError("file", f"malformed config file {path}: {exc}") from exc
    return parser


def _load_reads(parser, known_hosts: Tuple[str, ...]) -> Dict[str, Tuple[str, ...]]:
    reads: Dict[str, Tuple[str, ...]] = {}
    if not parser.has_section("reads"):
        return reads
    for host in parser.options("reads"):
        files = _split_csv(_get(parser, "reads", host))
        if not files:
            continue
        if len(files) > 2:
            raise ConfigError(f"reads.{host}",
                              f"reads.{host} lists {len(files)} files; expected 1 (single-end) "
                              f"or 2 (paired-end)")
        if host not in known_hosts:
            raise ConfigError(f"reads.{host}",
                              f"reads assigned to {host!r}, which is neither the coordinator "
                              f"nor a participant")
        reads[host] = tuple(files)
    return reads


def load_config(path) -> ClusterConfig:
    """
    Parse and validate a cluster configuration file.

    Raises MissingFieldError when the coordinator, the participant list,
    install_dir or database is absent, and ConfigError for any other invalid
    entry. Unknown sections and keys are ignored.
    """
    parser = _read_parser(Path(path))

    coordinator = _get(parser, "cluster", "coordinator")
    if not coordinator:
        raise MissingFieldError("cluster.coordinator")
    # ordered set: a host listed twice still gets one rank
    participants = tuple(dict.fromkeys(_split_csv(_get(parser, "cluster", "participants"))))
    if not participants:
        raise MissingFieldError("cluster.participants")
    install_dir = _get(parser, "paths", "install_dir")
    if not install_dir:
        raise MissingFieldError("paths.install_dir")
    database = _get(parser, "paths", "database")
    if not database:
        raise MissingFieldError("paths.database")

    level_raw = _get(parser, "logging", "level", "info")
    log_level = _LOG_LEVELS.get(level_raw.lower())
    if log_level is None:
        raise ConfigError("logging.level",
                          f"logging.level must be one of {sorted(_LOG_LEVELS)}, got {level_raw!r}")

    return ClusterConfig(
        coordinator=coordinator,
        participants=participants,
        install_dir=install_dir,
        database=database,
        results_dir=_get(parser, "paths", "results_dir", RESULTS_DIR_DEFAULT),
        reads=_load_reads(parser, (coordinator,) + participants),
        kmer_size=_get_int(parser, "classification", "kmer_size", KMER_SIZE_DEFAULT),
        batch_size=_get_int(parser, "classification", "batch_size", BATCH_SIZE_DEFAULT),
        min_freq_target=_get_optional_int(parser, "classification", "min_freq_target"),
        num_threads=_get_optional_int(parser, "classification", "num_threads"),
        num_devices=_get_optional_int(parser, "classification", "num_devices"),
        gap_iteration=_get_optional_int(parser, "classification", "gap_iteration"),
        sampling_factor=_get(parser, "classification", "sampling_factor"),
        tsk=_get_bool(parser, "classification", "tsk", False),
        extended=_get_bool(parser, "classification", "extended", False),
        gzipped=_get_bool(parser, "classification", "gzipped", False),
        verbose=_get_bool(parser, "classification", "verbose", False),
        coordinator_participates=_get_bool(parser, "options", "coordinator_participates", True),
        keep_local_results=_get_bool(parser, "options", "keep_local_results", True),
        log_level=log_level,
        log_file=_get(parser, "logging", "file", LOG_FILE_DEFAULT),
        show_progress=_get_bool(parser, "logging", "show_progress", True),
        network_interface=_get(parser, "cluster", "network_interface", NETWORK_INTERFACE_DEFAULT),
        ssh_timeout=_get_int(parser, "cluster", "ssh_timeout", SSH_TIMEOUT_DEFAULT),
    )
