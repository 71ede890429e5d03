import pytest

from metagenome_cluster_runner import cli


def test_subcommands_require_a_config():
    with pytest.raises(SystemExit):
        cli.main(["run"])


def test_run_delegates_to_launcher(monkeypatch):
    seen = {}

    def fake_launch(config, verbose=False):
        seen.update(config=config, verbose=verbose)
        return 3

    monkeypatch.setattr(cli, "launch", fake_launch)
    assert cli.main(["run", "-c", "cluster.conf", "-v"]) == 3
    assert seen == {"config": "cluster.conf", "verbose": True}


def test_check_fails_on_bad_config(write_config, capsys):
    assert cli.main(["check", "-c", str(write_config("[cluster]\ncoordinator = m0\n"))]) == 1


def test_check_prints_summary(write_config, install_dir, monkeypatch, capsys, fake_runner):
    path = write_config(f"[cluster]\ncoordinator = m0\nparticipants = w1\n"
                        f"[paths]\ninstall_dir = {install_dir}\ndatabase = /opt/db\n"
                        f"[reads]\nm0 = /data/a.fq\n")
    real_preflight = cli.preflight
    monkeypatch.setattr(cli, "preflight", lambda config: real_preflight(config, fake_runner()))
    monkeypatch.setattr(cli, "mpi_smoke_test", lambda outcome: True)
    assert cli.main(["check", "-c", str(path)]) == 0
    out = capsys.readouterr().out
    assert "Coordinator: m0" in out
    assert "MPI connectivity test passed!" in out
