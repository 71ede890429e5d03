"""
Shared fixtures: an in-process stand-in for MPI.COMM_WORLD (one thread per
rank) and a recording stand-in for subprocess.run.
"""

import logging
import queue
import subprocess
import threading
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path

import numpy as np
import pytest

TIMEOUT = 10


class FakeWorld:
    def __init__(self, size: int):
        self.size = size
        self.aborted = None
        self._bcast = [queue.Queue() for _ in range(size)]
        self._p2p = {}
        self._lock = threading.Lock()
        self._barrier = threading.Barrier(size)

    def channel(self, source, dest, tag) -> queue.Queue:
        with self._lock:
            return self._p2p.setdefault((source, dest, tag), queue.Queue())

    def comm(self, rank: int) -> "FakeComm":
        return FakeComm(self, rank)


class FakeComm:
    """The subset of the mpi4py communicator API the channels use."""

    def __init__(self, world: FakeWorld, rank: int):
        self.world = world
        self.rank = rank
        self.barriers = 0

    def Get_rank(self):
        return self.rank

    def Get_size(self):
        return self.world.size

    def Bcast(self, buf, root=0):
        if self.rank == root:
            for r in range(self.world.size):
                if r != root:
                    self.world._bcast[r].put(np.array(buf, copy=True))
        else:
            buf[...] = self.world._bcast[self.rank].get(timeout=TIMEOUT)

    def Send(self, buf, dest, tag=0):
        self.world.channel(self.rank, dest, tag).put(np.array(buf, copy=True))

    def Recv(self, buf, source, tag=0):
        buf[...] = self.world.channel(source, self.rank, tag).get(timeout=TIMEOUT)

    def Barrier(self):
        self.barriers += 1
        self.world._barrier.wait(timeout=TIMEOUT)

    def Abort(self, code=1):
        self.world.aborted = code
        raise SystemExit(code)


def run_world(size, target):
    """Call target(comm) once per rank, each in its own thread; returns results by rank."""
    world = FakeWorld(size)
    with ThreadPoolExecutor(max_workers=size) as pool:
        futures = [pool.submit(target, world.comm(rank)) for rank in range(size)]
        return [f.result(timeout=TIMEOUT * 3) for f in futures]


class FakeRunner:
    """
    Records every argv and answers with a return code chosen by kind of call:
    '-c' classify, '-a' abundance, '-m' merge, 'ssh-*' probes, 'mpirun'.
    """

    def __init__(self, returncodes=None, on_classify=None, raise_for=None):
        self.calls = []
        self.kwargs = []
        self.returncodes = returncodes or {}
        self.on_classify = on_classify
        self.raise_for = raise_for or set()

    @staticmethod
    def kind(argv):
        if argv[0] == "ssh":
            if argv[-1] == "hostname":
                return "ssh-hostname"
            return "ssh-python" if "import" in argv[-1] else "ssh-test"
        if Path(argv[0]).name == "mpirun":
            return "mpirun"
        return argv[1] if len(argv) > 1 else argv[0]

    def calls_of(self, kind):
        return [argv for argv in self.calls if self.kind(argv) == kind]

    def __call__(self, argv, **kwargs):
        argv = list(argv)
        self.calls.append(argv)
        self.kwargs.append(kwargs)
        kind = self.kind(argv)
        if kind in self.raise_for:
            raise FileNotFoundError(2, "No such file or directory", argv[0])
        rc = self.returncodes.get(kind, 0)
        if isinstance(rc, dict):
            rc = rc.get(argv[-2] if argv[0] == "ssh" else None, 0)
        if kind == "-c" and rc == 0 and self.on_classify:
            self.on_classify(argv)
        stdout = argv[-2] if kind == "ssh-hostname" else ""
        return subprocess.CompletedProcess(argv, rc, stdout=stdout, stderr="")


@pytest.fixture
def fake_runner():
    return FakeRunner


@pytest.fixture
def fake_world():
    return FakeWorld


@pytest.fixture
def world_runner():
    return run_world


@pytest.fixture
def write_config(tmp_path):
    def _write(text: str, name: str = "cluster.conf") -> Path:
        path = tmp_path / name
        path.write_text(text)
        return path
    return _write


@pytest.fixture
def install_dir(tmp_path):
    d = tmp_path / "install"
    d.mkdir()
    return d


@pytest.fixture
def reads(tmp_path):
    """Three small FASTQ files on the 'local' filesystem."""
    d = tmp_path / "reads"
    d.mkdir()
    paths = {}
    for name in ("a.fq", "b_R1.fq", "b_R2.fq"):
        p = d / name
        p.write_text("@r1\nACGT\n+\nIIII\n")
        paths[name] = str(p)
    return paths


@pytest.fixture(autouse=True)
def _close_coordinator_log_files():
    yield
    logger = logging.getLogger("coordinator")
    for handler in list(logger.handlers):
        if isinstance(handler, logging.FileHandler):
            logger.removeHandler(handler)
            handler.close()
