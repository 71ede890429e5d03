from pathlib import Path

import pytest

from metagenome_cluster_runner.config import ClusterConfig
from metagenome_cluster_runner.node_runner import (
    NO_INPUTS,
    classification_argv,
    count_reads,
    result_base,
    run_local,
)

CSV = """Object_ID, Length, Assignment
read1, 150, 562
read2, 150, NA
read3, 149, 1280
"""


def _config(install_dir, reads, **overrides):
    base = dict(coordinator="m0", participants=("w1",), install_dir=str(install_dir),
                database="/opt/db", reads=reads)
    base.update(overrides)
    return ClusterConfig(**base)


def _write_csv(argv):
    base = argv[argv.index("-R") + 1]
    Path(f"{base}.csv").write_text(CSV)


def test_single_end_argv_passes_only_set_options(install_dir):
    cfg = _config(install_dir, {}, num_threads=4, gzipped=True)
    argv = classification_argv(cfg, ["/data/a.fq"], Path("/r/w1_a"))
    assert argv[:4] == [str(install_dir / "bin/arda"), "-c", "-O", "/data/a.fq"]
    assert argv[4:] == ["-R", "/r/w1_a", "-b", "32", "-k", "31", "-n", "4", "--gzipped", "--light"]


def test_paired_end_argv_with_every_option(install_dir):
    cfg = _config(install_dir, {}, min_freq_target=0, num_threads=2, num_devices=1,
                  gap_iteration=5, sampling_factor="2", tsk=True, extended=True,
                  gzipped=True, verbose=True)
    argv = classification_argv(cfg, ["/data/r1.fq", "/data/r2.fq"], Path("/r/w1_r1"))
    assert argv[2:5] == ["-P", "/data/r1.fq", "/data/r2.fq"]
    for flag, value in [("-t", "0"), ("-n", "2"), ("-d", "1"), ("-g", "5"), ("-s", "2")]:
        assert argv[argv.index(flag) + 1] == value
    assert argv[-5:] == ["--tsk", "--extended", "--gzipped", "--verbose", "--light"]


def test_result_base_is_host_prefixed(install_dir):
    cfg = _config(install_dir, {})
    assert result_base(cfg, "w1", "/data/sample.fq.gz") == install_dir / "results" / "w1_sample.fq"


def test_count_reads(tmp_path):
    path = tmp_path / "res.csv"
    path.write_text(CSV)
    assert count_reads(str(path)) == (3, 2)


def test_successful_run(install_dir, reads, fake_runner):
    cfg = _config(install_dir, {"w1": (reads["a.fq"],)})
    runner = fake_runner(on_classify=_write_csv)
    result = run_local(cfg, "w1", runner=runner)

    base = install_dir / "results" / "w1_a"
    assert result.succeeded
    assert result.error_message == ""
    assert result.result_file == f"{base}.csv"
    assert result.abundance_file == f"{base}_abundance.txt"
    assert (result.reads_processed, result.reads_classified) == (3, 2)
    assert result.elapsed_seconds >= 0
    assert (install_dir / "results").is_dir()

    assert runner.calls_of("-a") == [[str(install_dir / "bin/arda"), "-a", "/opt/db", f"{base}.csv"]]
    assert all(kw["cwd"] == str(install_dir) for kw in runner.kwargs)


def test_paired_end_inputs(install_dir, reads, fake_runner):
    cfg = _config(install_dir, {"w1": (reads["b_R1.fq"], reads["b_R2.fq"])})
    runner = fake_runner()
    result = run_local(cfg, "w1", runner=runner)
    assert result.succeeded
    assert result.result_file.endswith("w1_b_R1.csv")
    assert "-P" in runner.calls_of("-c")[0]


def test_no_inputs_assigned(install_dir, fake_runner):
    runner = fake_runner()
    result = run_local(_config(install_dir, {}), "w2", runner=runner)
    assert not result.succeeded
    assert result.error_message == NO_INPUTS
    assert runner.calls == []


def test_missing_input_file(install_dir, reads, fake_runner):
    missing = str(Path(reads["a.fq"]).with_name("gone.fq"))
    runner = fake_runner()
    result = run_local(_config(install_dir, {"w1": (reads["a.fq"], missing)}), "w1", runner=runner)
    assert not result.succeeded
    assert result.error_message == f"input file not found: {missing}"
    assert runner.calls == []


def test_classifier_exit_code_reported_and_no_abundance(install_dir, reads, fake_runner):
    runner = fake_runner(returncodes={"-c": 2})
    result = run_local(_config(install_dir, {"w1": (reads["a.fq"],)}), "w1", runner=runner)
    assert not result.succeeded
    assert result.error_message.endswith("exit code 2")
    assert result.result_file == ""
    assert runner.calls_of("-a") == []


def test_classifier_that_cannot_start(install_dir, reads, fake_runner):
    runner = fake_runner(raise_for={"-c"})
    result = run_local(_config(install_dir, {"w1": (reads["a.fq"],)}), "w1", runner=runner)
    assert not result.succeeded
    assert result.error_message.startswith("could not start classifier")


@pytest.mark.parametrize("runner_kwargs", [{"returncodes": {"-a": 1}}, {"raise_for": {"-a"}}])
def test_abundance_failure_is_not_a_node_failure(install_dir, reads, fake_runner, runner_kwargs):
    runner = fake_runner(**runner_kwargs)
    result = run_local(_config(install_dir, {"w1": (reads["a.fq"],)}), "w1", runner=runner)
    assert result.succeeded
    assert result.abundance_file == ""
    assert result.result_file.endswith("w1_a.csv")
    # no CSV was written by the fake classifier: counts stay at zero
    assert (result.reads_processed, result.reads_classified) == (0, 0)


def test_input_that_cannot_be_inspected(install_dir, reads, fake_runner, monkeypatch):
    def denied(self):
        raise PermissionError(13, "Permission denied", str(self))

    monkeypatch.setattr(Path, "exists", denied)
    runner = fake_runner()
    result = run_local(_config(install_dir, {"w1": (reads["a.fq"],)}), "w1", runner=runner)
    assert not result.succeeded
    assert result.error_message.startswith(f"cannot access input file {reads['a.fq']}: ")
    assert "Permission denied" in result.error_message
    assert runner.calls == []


def test_overlong_input_path_is_a_failed_result(install_dir, fake_runner):
    path = "/" + "x" * 5000 + ".fq"
    runner = fake_runner()
    result = run_local(_config(install_dir, {"w1": (path,)}), "w1", runner=runner)
    assert not result.succeeded
    assert path in result.error_message
    assert runner.calls == []


def test_count_reads_without_assignment_column(tmp_path):
    path = tmp_path / "r.csv"
    path.write_text("Object_ID, Length\nread1, 150\nread2, 151\n")
    assert count_reads(str(path)) == (2, 0)


def test_count_reads_extended_mode(tmp_path):
    path = tmp_path / "r.csv"
    path.write_text("Object_ID, Length, 1st_assignment, 2nd_assignment\n"
                    "read1, 150, 562, 561\nread2, 150, NA, NA\n")
    assert count_reads(str(path)) == (2, 1)
