"""
Command-line interface for running read classification across a cluster.

Examples:

# 1) Check the cluster before a run (SSH, classifier binary, MPI):
python -m metagenome_cluster_runner check -c config/cluster.conf

# 2) Run: preflight, then mpirun starts one worker per host with reads:
python -m metagenome_cluster_runner run -c config/cluster.conf -v

# 3) Internal, started by mpirun on every host:
python -m metagenome_cluster_runner worker -c /abs/path/cluster.conf
"""

from __future__ import annotations

import argparse
from typing import List, Optional

from .launcher import describe_config, launch, mpi_smoke_test, preflight
from .log import get_logger

LOGGER = get_logger("cli")


def cmd_run(args) -> int:
    return launch(args.config, verbose=args.verbose)


def cmd_check(args) -> int:
    outcome = preflight(args.config)
    if outcome.config is not None:
        print(describe_config(outcome.config))
        print()
    if not outcome.ready:
        LOGGER.error("Preflight aborted: %s", outcome.message)
        return 1
    print(f"Generated host file: {outcome.hostfile}")
    if not mpi_smoke_test(outcome):
        print("\nMPI connectivity test failed!")
        print("Make sure:")
        print("  1. Passwordless SSH is set up between all nodes")
        print("  2. MPI is installed at the same prefix on all nodes")
        print("  3. This package and the classifier exist at the same paths on all nodes")
        return 1
    print("\nMPI connectivity test passed!")
    return 0


def cmd_worker(args) -> int:
    # only worker processes need an MPI runtime
    from mpi4py import MPI
    from .cluster_run import run_rank

    comm = MPI.COMM_WORLD
    LOGGER.debug("Rank %d of %d on %s", comm.Get_rank(), comm.Get_size(), MPI.Get_processor_name())
    return run_rank(args.config, comm, verbose=args.verbose)


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(prog="metagenome_cluster_runner")
    sub = ap.add_subparsers(dest="cmd", required=True)

    ap_run = sub.add_parser("run", help="Preflight the cluster, then launch the classification run via mpirun.")
    ap_run.add_argument("-c", "--config", required=True, help="Cluster configuration file (INI format).")
    ap_run.add_argument("-v", "--verbose", action="store_true", help="Debug logging on every rank.")
    ap_run.set_defaults(func=cmd_run)

    ap_check = sub.add_parser("check", help="Run preflight checks and an MPI connectivity test only.")
    ap_check.add_argument("-c", "--config", required=True, help="Cluster configuration file (INI format).")
    ap_check.set_defaults(func=cmd_check)

    ap_worker = sub.add_parser("worker", help="Per-rank entry point started by mpirun (do not use manually).")
    ap_worker.add_argument("-c", "--config", required=True, help="Absolute path to the configuration file.")
    ap_worker.add_argument("-v", "--verbose", action="store_true", help="Debug logging.")
    ap_worker.set_defaults(func=cmd_worker)
    return ap


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    return args.func(args)


if __name__ == "__main__":
    raise SystemExit(main())
