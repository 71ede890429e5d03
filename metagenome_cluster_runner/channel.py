"""
MPI channels between the coordinator (rank 0) and the participants.

Both directions move a wire record as two messages: its length in a
one-element int64 buffer, then the payload as a uint8 buffer. They use the
mpi4py buffer API (Bcast/Send/Recv with numpy arrays), so any object with
those methods works as ``comm``; tests pass an in-process fake.

  config:  rank 0 --Bcast--> every rank (one shot, no retry, fatal on failure)
  results: every participant --Send(tag=2)--> rank 0, drained in rank order
"""

from __future__ import annotations

import logging
from typing import Iterable, List, Optional

import numpy as np
from tqdm import tqdm

from .config import ClusterConfig
from .errors import TransportError, WireFormatError
from .log import get_logger
from .node_runner import NodeResult
from .wire import decode_config, decode_result, encode_config, encode_result

LOGGER = get_logger("channel")

ROOT = 0
TAG_RESULT_DATA = 2


def _length_buffer(n: int = 0) -> np.ndarray:
    return np.array([n], dtype=np.int64)


def _payload_buffer(data: bytes) -> np.ndarray:
    # writable copy; MPI may require it even on the sending side
    return np.frombuffer(data, dtype=np.uint8).copy()


def broadcast_config(comm, cfg: Optional[ClusterConfig]) -> ClusterConfig:
    """
    Distribute the coordinator's config to every rank and return it.

    Every rank must call this exactly once. Rank 0 supplies ``cfg``; the
    others pass None and get back a config equal to the coordinator's.
    """
    rank = comm.Get_rank()
    if rank == ROOT:
        if cfg is None:
            raise TransportError("rank 0 must supply the configuration to broadcast")
        payload = _payload_buffer(encode_config(cfg))
        length = _length_buffer(payload.size)
    else:
        length = _length_buffer()

    comm.Bcast(length, root=ROOT)
    if rank != ROOT:
        payload = np.empty(int(length[0]), dtype=np.uint8)
    comm.Bcast(payload, root=ROOT)

    if rank == ROOT:
        return cfg
    try:
        return decode_config(payload.tobytes())
    except WireFormatError as exc:
        raise TransportError(f"config broadcast could not be decoded on rank {rank}: {exc}") from exc


def send_result(comm, result: NodeResult):
    payload = _payload_buffer(encode_result(result))
    comm.Send(_length_buffer(payload.size), dest=ROOT, tag=TAG_RESULT_DATA)
    comm.Send(payload, dest=ROOT, tag=TAG_RESULT_DATA)


def receive_result(comm, source: int) -> NodeResult:
    length = _length_buffer()
    comm.Recv(length, source=source, tag=TAG_RESULT_DATA)
    payload = np.empty(int(length[0]), dtype=np.uint8)
    comm.Recv(payload, source=source, tag=TAG_RESULT_DATA)
    try:
        return decode_result(payload.tobytes())
    except WireFormatError as exc:
        # keep one entry per rank so the report still accounts for it
        return NodeResult.failure(f"rank-{source}",
                                  f"unreadable result record from rank {source}: {exc}")


def receive_all(comm, ranks: Iterable[int], progress: bool = False,
                logger: logging.Logger = LOGGER) -> List[NodeResult]:
    """Receive exactly one NodeResult from each rank, in increasing rank order."""
    results = []
    for source in tqdm(sorted(ranks), desc="collecting node results", unit="node",
                       disable=not progress):
        result = receive_result(comm, source)
        logger.info("%s (rank %d): %s (%ds)", result.hostname, source,
                    "SUCCESS" if result.succeeded else "FAILED", int(result.elapsed_seconds))
        results.append(result)
    return results
