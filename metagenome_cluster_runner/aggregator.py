"""
Coordinator-side aggregation of the per-node results.

Merges the per-node abundance files with the classifier's merge mode (only
when there are at least two), renders the plain-text cluster report and writes
a per-node Parquet table next to it. Nothing here fails the run: a failed merge
drops the merged section, and a failed write is logged.
"""

from __future__ import annotations

import logging
import shlex
import subprocess
import time
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

import pandas as pd

from .config import ClusterConfig
from .log import get_logger
from .node_runner import NodeResult, Runner

LOGGER = get_logger("aggregator")

RULE = "-" * 60
BANNER = "=" * 40


@dataclass
class ClusterReport:
    results: List[NodeResult]
    merged_abundance_path: Optional[str]
    successes: int
    total: int
    total_cpu_seconds: float
    wall_clock_seconds: float
    speedup: float
    report_path: str
    text: str


def summarize(results: Sequence[NodeResult]) -> Tuple[int, int, float, float, float]:
    """
    (successes, total, total CPU seconds, wall-clock seconds, speedup).

    Nodes run concurrently, so wall clock is the slowest successful node and
    speedup is total/wall (0 when nothing succeeded).
    """
    elapsed = [r.elapsed_seconds for r in results if r.succeeded]
    total_cpu = sum(elapsed)
    wall = max(elapsed) if elapsed else 0.0
    speedup = total_cpu / wall if wall > 0 else 0.0
    return len(elapsed), len(results), total_cpu, wall, speedup


def merge_abundance(cfg: ClusterConfig, results: Sequence[NodeResult],
                    logger: logging.Logger = LOGGER,
                    runner: Runner = subprocess.run) -> Optional[str]:
    """Merge successful nodes' abundance files; returns the merged path or None."""
    files = [r.abundance_file for r in results if r.succeeded and r.abundance_file]
    if len(files) < 2:
        logger.info("Skipping abundance merge (need at least 2 files, have %d)", len(files))
        return None

    merged = str(cfg.merged_abundance_path)
    argv = [str(cfg.classifier_path), "-m", *files, "-o", merged]
    logger.info("Merging abundance files: %s", shlex.join(argv))
    try:
        rc = runner(argv, cwd=cfg.install_dir, check=False).returncode
    except OSError as exc:
        logger.warning("Abundance merge could not start: %s", exc)
        return None
    if rc != 0:
        logger.warning("Abundance merge failed with exit code %d", rc)
        return None
    logger.info("Merged abundance written to: %s", merged)
    return merged


def render_report(cfg: ClusterConfig, results: Sequence[NodeResult], world_size: int,
                  merged_abundance_path: Optional[str] = None,
                  generated: Optional[str] = None) -> str:
    generated = generated or time.strftime("%Y-%m-%d %H:%M:%S")
    successes, total, total_cpu, wall, speedup = summarize(results)

    lines = [
        BANNER,
        "  Cluster Classification Report",
        f"  Generated: {generated}",
        BANNER,
        "",
        "CLUSTER CONFIGURATION",
        f"  Coordinator: {cfg.coordinator}",
        f"  Participants: {', '.join(cfg.participants)}",
        f"  Database: {cfg.database}",
        f"  K-mer size: {cfg.kmer_size}",
        f"  Batch size: {cfg.batch_size}",
        f"  MPI processes: {world_size}",
        "",
        "NODE RESULTS",
        RULE,
    ]
    for r in results:
        lines.append(f"  {r.hostname}:")
        if r.succeeded:
            lines.append("    Status: SUCCESS")
            lines.append(f"    Elapsed: {r.elapsed_seconds:.1f} seconds")
            lines.append(f"    Result: {r.result_file}")
            if r.abundance_file:
                lines.append(f"    Abundance: {r.abundance_file}")
            if r.reads_processed:
                lines.append(f"    Reads classified: {r.reads_classified}/{r.reads_processed}")
        else:
            lines.append("    Status: FAILED")
            lines.append(f"    Error: {r.error_message}")
        lines.append("")

    if merged_abundance_path:
        lines += ["MERGED ABUNDANCE", RULE, f"  {merged_abundance_path}", ""]

    lines += [
        "SUMMARY",
        RULE,
        f"  Nodes processed: {successes}/{total}",
        f"  Total CPU time: {total_cpu:.1f} seconds",
        f"  Wall clock time: {wall:.1f} seconds (parallel)",
        f"  Speedup: {speedup:.2f}x",
        "",
    ]
    return "\n".join(lines)


def write_summary_table(results: Sequence[NodeResult], out_path: Path):
    df = pd.DataFrame([asdict(r) for r in results], columns=list(NodeResult.__dataclass_fields__))
    out_path.parent.mkdir(parents=True, exist_ok=True)
    df.to_parquet(out_path, compression="zstd", index=False)


def aggregate(cfg: ClusterConfig, results: Sequence[NodeResult], world_size: int,
              logger: logging.Logger = LOGGER,
              runner: Runner = subprocess.run) -> ClusterReport:
    """Merge abundances and write the cluster report; never raises for node or output errors."""
    logger.info("=== Generating Aggregate Report ===")
    results = list(results)
    merged = merge_abundance(cfg, results, logger, runner)
    text = render_report(cfg, results, world_size, merged)

    report_path = cfg.report_path
    try:
        report_path.parent.mkdir(parents=True, exist_ok=True)
        report_path.write_text(text)
        logger.info("Report written to: %s", report_path)
    except OSError as exc:
        logger.error("Could not write report %s: %s", report_path, exc)

    try:
        write_summary_table(results, cfg.summary_path)
        logger.info("Per-node table written to: %s", cfg.summary_path)
    except (OSError, ValueError) as exc:
        logger.warning("Could not write per-node table %s: %s", cfg.summary_path, exc)

    successes, total, total_cpu, wall, speedup = summarize(results)
    return ClusterReport(
        results=results,
        merged_abundance_path=merged,
        successes=successes,
        total=total,
        total_cpu_seconds=total_cpu,
        wall_clock_seconds=wall,
        speedup=speedup,
        report_path=str(report_path),
        text=text,
    )
