"""
Run the classifier against this node's assigned reads.

Each node gets exactly one attempt per run. Every failure is captured in the
returned NodeResult instead of being raised, because the coordinator reports
per-node outcomes as data:

  1) look up the reads assigned to this host
  2) make sure the shared results directory exists (best effort)
  3) check the input files exist
  4) run the classifier (single- or paired-end) into <results>/<host>_<stem>.csv
  5) on success, run abundance estimation (failure here is only a warning)

Outputs are prefixed with the hostname so several nodes can write into one
shared results directory without clobbering each other.
"""

from __future__ import annotations

import logging
import shlex
import subprocess
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, Sequence, Tuple

import pandas as pd

from .config import ClusterConfig
from .log import get_logger

LOGGER = get_logger("node_runner")

NO_INPUTS = "no inputs assigned"

# Same call signature subset as subprocess.run; tests swap in a fake
Runner = Callable[..., subprocess.CompletedProcess]


@dataclass(frozen=True)
class NodeResult:
    hostname: str
    succeeded: bool
    result_file: str = ""
    abundance_file: str = ""
    elapsed_seconds: float = 0.0
    error_message: str = ""
    reads_processed: int = 0
    reads_classified: int = 0

    @classmethod
    def failure(cls, hostname: str, message: str, elapsed_seconds: float = 0.0) -> "NodeResult":
        return cls(hostname=hostname, succeeded=False,
                   elapsed_seconds=elapsed_seconds, error_message=message)


def result_base(cfg: ClusterConfig, hostname: str, first_input: str) -> Path:
    """<results>/<hostname>_<first input name without its last extension>"""
    return cfg.results_path / f"{hostname}_{Path(first_input).stem}"


def classification_argv(cfg: ClusterConfig, inputs: Sequence[str], base: Path) -> List[str]:
    argv = [str(cfg.classifier_path), "-c"]
    if len(inputs) == 2:
        argv += ["-P", inputs[0], inputs[1]]
    else:
        argv += ["-O", inputs[0]]
    argv += ["-R", str(base), "-b", str(cfg.batch_size)]

    # unset options are left to the classifier's defaults
    if cfg.kmer_size > 0:
        argv += ["-k", str(cfg.kmer_size)]
    if cfg.min_freq_target is not None:
        argv += ["-t", str(cfg.min_freq_target)]
    if cfg.num_threads:
        argv += ["-n", str(cfg.num_threads)]
    if cfg.num_devices:
        argv += ["-d", str(cfg.num_devices)]
    if cfg.gap_iteration is not None:
        argv += ["-g", str(cfg.gap_iteration)]
    if cfg.sampling_factor:
        argv += ["-s", cfg.sampling_factor]
    if cfg.tsk:
        argv.append("--tsk")
    if cfg.extended:
        argv.append("--extended")
    if cfg.gzipped:
        argv.append("--gzipped")
    if cfg.verbose:
        argv.append("--verbose")

    # edge boards: always the low-memory database variant
    argv.append("--light")
    return argv


def abundance_argv(cfg: ClusterConfig, result_file: str) -> List[str]:
    return [str(cfg.classifier_path), "-a", cfg.database, result_file]


def count_reads(result_file: str) -> Tuple[int, int]:
    """
    Count (processed, classified) reads in a classification CSV.

    One row per read; unassigned reads carry NA in the assignment column
    ('Assignment', or '1st_assignment' in extended mode).
    """
    header = pd.read_csv(result_file, skipinitialspace=True, nrows=0).columns
    column = next((c for c in ("Assignment", "1st_assignment") if c in header), None)
    # one column is enough; result files can be large on small boards
    df = pd.read_csv(result_file, skipinitialspace=True, usecols=[column or header[0]])
    processed = int(len(df))
    if column is None:
        return processed, 0
    return processed, int(df[column].notna().sum())


def _count_or_zero(result_file: str, logger: logging.Logger) -> Tuple[int, int]:
    try:
        return count_reads(result_file)
    except (OSError, ValueError, pd.errors.ParserError) as exc:
        logger.warning("Could not count reads in %s: %s", result_file, exc)
        return 0, 0


def run_local(cfg: ClusterConfig, hostname: str,
              logger: logging.Logger = LOGGER,
              runner: Runner = subprocess.run) -> NodeResult:
    """Classify this host's reads once and return the outcome; never raises for node errors."""
    logger.info("Starting classification on %s", hostname)

    inputs = cfg.inputs_for(hostname)
    if not inputs:
        logger.error("%s: %s", hostname, NO_INPUTS)
        return NodeResult.failure(hostname, NO_INPUTS)

    try:
        cfg.results_path.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        # the classifier fails loudly if the directory is really unusable
        logger.warning("Could not create results directory %s: %s", cfg.results_path, exc)

    start = time.perf_counter()

    def failed(message: str) -> NodeResult:
        logger.error("%s: %s", hostname, message)
        return NodeResult.failure(hostname, message, time.perf_counter() - start)

    for path in inputs:
        logger.info("Input: %s", path)
        try:
            found = Path(path).exists()
        except OSError as exc:
            return failed(f"cannot access input file {path}: {exc}")
        if not found:
            return failed(f"input file not found: {path}")

    base = result_base(cfg, hostname, inputs[0])
    argv = classification_argv(cfg, inputs, base)
    logger.info("Running: %s", shlex.join(argv))
    try:
        proc = runner(argv, cwd=cfg.install_dir, check=False)
    except OSError as exc:
        return failed(f"could not start classifier: {exc}")
    if proc.returncode != 0:
        return failed(f"classification failed with exit code {proc.returncode}")

    result_file = f"{base}.csv"
    logger.info("Classification complete: %s", result_file)
    processed, classified = _count_or_zero(result_file, logger)

    abundance_file = ""
    argv = abundance_argv(cfg, result_file)
    logger.debug("Running: %s", shlex.join(argv))
    try:
        rc = runner(argv, cwd=cfg.install_dir, check=False).returncode
    except OSError as exc:
        logger.warning("Abundance estimation could not start: %s", exc)
    else:
        if rc == 0:
            abundance_file = f"{base}_abundance.txt"
            logger.info("Abundance estimation complete: %s", abundance_file)
        else:
            logger.warning("Abundance estimation failed with exit code %d", rc)

    elapsed = time.perf_counter() - start
    logger.info("Completed in %.1f seconds", elapsed)
    return NodeResult(
        hostname=hostname,
        succeeded=True,
        result_file=result_file,
        abundance_file=abundance_file,
        elapsed_seconds=elapsed,
        reads_processed=processed,
        reads_classified=classified,
    )
