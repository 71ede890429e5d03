"""
Length-prefixed record codec for the MPI channels.

A record is a flat sequence of fields. Each field is a 4-byte big-endian
length followed by that many UTF-8 bytes, so hostnames, paths and error
messages may contain any character ('|', ',', newlines) without escaping.
Variable-length collections are written as a count field followed by their
items, so the decoder never guesses cardinality. Every record opens with a
magic field naming its type and version.

  config:  CCFG1, scalars..., n_participants, host..., n_reads, (host, n_paths, path...)...
  result:  NRES1, hostname, succeeded, result_file, abundance_file, elapsed,
           error_message, reads_processed, reads_classified
"""

from __future__ import annotations

import struct
from typing import List, Optional

from .config import ClusterConfig
from .errors import WireFormatError
from .node_runner import NodeResult

CONFIG_MAGIC = "CCFG1"
RESULT_MAGIC = "NRES1"

_LEN = struct.Struct(">I")


class RecordWriter:
    def __init__(self):
        self._parts: List[bytes] = []

    def put_str(self, value: str):
        data = value.encode("utf-8")
        self._parts.append(_LEN.pack(len(data)))
        self._parts.append(data)

    def put_int(self, value: int):
        self.put_str(str(int(value)))

    def put_float(self, value: float):
        # repr() round-trips a float exactly
        self.put_str(repr(float(value)))

    def put_bool(self, value: bool):
        self.put_str("1" if value else "0")

    def put_optional_int(self, value: Optional[int]):
        self.put_bool(value is not None)
        if value is not None:
            self.put_int(value)

    def put_optional_str(self, value: Optional[str]):
        self.put_bool(value is not None)
        if value is not None:
            self.put_str(value)

    def getvalue(self) -> bytes:
        return b"".join(self._parts)


class RecordReader:
    def __init__(self, data: bytes):
        self._data = bytes(data)
        self._pos = 0

    def get_str(self) -> str:
        if self._pos + _LEN.size > len(self._data):
            raise WireFormatError(f"truncated record: no field length at offset {self._pos}")
        (n,) = _LEN.unpack_from(self._data, self._pos)
        start = self._pos + _LEN.size
        end = start + n
        if end > len(self._data):
            raise WireFormatError(f"truncated record: field at offset {self._pos} "
                                  f"needs {n} bytes, {len(self._data) - start} left")
        self._pos = end
        try:
            return self._data[start:end].decode("utf-8")
        except UnicodeDecodeError as exc:
            raise WireFormatError(f"field at offset {start} is not UTF-8: {exc}") from exc

    def get_int(self) -> int:
        text = self.get_str()
        try:
            return int(text)
        except ValueError:
            raise WireFormatError(f"expected an integer field, got {text!r}") from None

    def get_count(self) -> int:
        n = self.get_int()
        if n < 0:
            raise WireFormatError(f"negative item count {n}")
        return n

    def get_float(self) -> float:
        text = self.get_str()
        try:
            return float(text)
        except ValueError:
            raise WireFormatError(f"expected a float field, got {text!r}") from None

    def get_bool(self) -> bool:
        text = self.get_str()
        if text not in ("0", "1"):
            raise WireFormatError(f"expected a boolean field, got {text!r}")
        return text == "1"

    def get_optional_int(self) -> Optional[int]:
        return self.get_int() if self.get_bool() else None

    def get_optional_str(self) -> Optional[str]:
        return self.get_str() if self.get_bool() else None

    def expect_magic(self, magic: str):
        found = self.get_str()
        if found != magic:
            raise WireFormatError(f"expected a {magic} record, got {found!r}")

    def finish(self):
        left = len(self._data) - self._pos
        if left:
            raise WireFormatError(f"{left} trailing bytes after record")


def encode_config(cfg: ClusterConfig) -> bytes:
    w = RecordWriter()
    w.put_str(CONFIG_MAGIC)
    w.put_str(cfg.coordinator)
    w.put_str(cfg.install_dir)
    w.put_str(cfg.database)
    w.put_str(cfg.results_dir)
    w.put_int(cfg.kmer_size)
    w.put_int(cfg.batch_size)
    w.put_optional_int(cfg.min_freq_target)
    w.put_optional_int(cfg.num_threads)
    w.put_optional_int(cfg.num_devices)
    w.put_optional_int(cfg.gap_iteration)
    w.put_optional_str(cfg.sampling_factor)
    w.put_bool(cfg.tsk)
    w.put_bool(cfg.extended)
    w.put_bool(cfg.gzipped)
    w.put_bool(cfg.verbose)
    w.put_bool(cfg.coordinator_participates)
    w.put_bool(cfg.keep_local_results)
    w.put_str(cfg.log_level)
    w.put_str(cfg.log_file)
    w.put_bool(cfg.show_progress)
    w.put_str(cfg.network_interface)
    w.put_int(cfg.ssh_timeout)

    w.put_int(len(cfg.participants))
    for host in cfg.participants:
        w.put_str(host)

    w.put_int(len(cfg.reads))
    for host, paths in cfg.reads.items():
        w.put_str(host)
        w.put_int(len(paths))
        for path in paths:
            w.put_str(path)
    return w.getvalue()


def decode_config(data: bytes) -> ClusterConfig:
    r = RecordReader(data)
    r.expect_magic(CONFIG_MAGIC)
    coordinator = r.get_str()
    install_dir = r.get_str()
    database = r.get_str()
    results_dir = r.get_str()
    kmer_size = r.get_int()
    batch_size = r.get_int()
    min_freq_target = r.get_optional_int()
    num_threads = r.get_optional_int()
    num_devices = r.get_optional_int()
    gap_iteration = r.get_optional_int()
    sampling_factor = r.get_optional_str()
    tsk = r.get_bool()
    extended = r.get_bool()
    gzipped = r.get_bool()
    verbose = r.get_bool()
    coordinator_participates = r.get_bool()
    keep_local_results = r.get_bool()
    log_level = r.get_str()
    log_file = r.get_str()
    show_progress = r.get_bool()
    network_interface = r.get_str()
    ssh_timeout = r.get_int()

    participants = tuple(r.get_str() for _ in range(r.get_count()))

    reads = {}
    for _ in range(r.get_count()):
        host = r.get_str()
        reads[host] = tuple(r.get_str() for _ in range(r.get_count()))
    r.finish()

    return ClusterConfig(
        coordinator=coordinator,
        participants=participants,
        install_dir=install_dir,
        database=database,
        results_dir=results_dir,
        reads=reads,
        kmer_size=kmer_size,
        batch_size=batch_size,
        min_freq_target=min_freq_target,
        num_threads=num_threads,
        num_devices=num_devices,
        gap_iteration=gap_iteration,
        sampling_factor=sampling_factor,
        tsk=tsk,
        extended=extended,
        gzipped=gzipped,
        verbose=verbose,
        coordinator_participates=coordinator_participates,
        keep_local_results=keep_local_results,
        log_level=log_level,
        log_file=log_file,
        show_progress=show_progress,
        network_interface=network_interface,
        ssh_timeout=ssh_timeout,
    )


def encode_result(result: NodeResult) -> bytes:
    w = RecordWriter()
    w.put_str(RESULT_MAGIC)
    w.put_str(result.hostname)
    w.put_bool(result.succeeded)
    w.put_str(result.result_file)
    w.put_str(result.abundance_file)
    w.put_float(result.elapsed_seconds)
    w.put_str(result.error_message)
    w.put_int(result.reads_processed)
    w.put_int(result.reads_classified)
    return w.getvalue()


def decode_result(data: bytes) -> NodeResult:
    r = RecordReader(data)
    r.expect_magic(RESULT_MAGIC)
    result = NodeResult(
        hostname=r.get_str(),
        succeeded=r.get_bool(),
        result_file=r.get_str(),
        abundance_file=r.get_str(),
        elapsed_seconds=r.get_float(),
        error_message=r.get_str(),
        reads_processed=r.get_int(),
        reads_classified=r.get_int(),
    )
    r.finish()
    return result
