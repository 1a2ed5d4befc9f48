import json

import pytest

from dissonance.cli import EXIT_BLOCK, EXIT_ERROR, EXIT_OK, main
from dissonance.config import DissonanceConfig
from dissonance.engine import Engine


@pytest.fixture
def engine(clock, signer):
    return Engine.from_config(DissonanceConfig(), clock=clock, signer=signer)


@pytest.fixture
def write_json(tmp_path):
    def write(name, data):
        path = tmp_path / name
        path.write_text(json.dumps(data))
        return str(path)
    return write


def test_evaluate_allow(engine, write_json, capsys):
    path = write_json("req.json", {"mode": "drift"})
    assert main(["evaluate", path], engine=engine) == EXIT_OK
    assert json.loads(capsys.readouterr().out)["decision"]["outcome"] == "allow"


def test_evaluate_block_with_summary(engine, write_json, capsys):
    path = write_json("req.json", {"mode": "pull_request", "strict": True, "context": {"repository_name": "acme"}})
    assert main(["evaluate", path, "--summary"], engine=engine) == EXIT_BLOCK
    out = capsys.readouterr().out
    assert "Decision: BLOCK" in out
    assert "MD-004" in out


def test_evaluate_invalid_input(engine, write_json, capsys):
    path = write_json("req.json", {"mode": "weekly"})
    assert main(["evaluate", path], engine=engine) == EXIT_ERROR
    assert "mode" in capsys.readouterr().err


def test_missing_file(engine, tmp_path):
    assert main(["evaluate", str(tmp_path / "absent.json")], engine=engine) == EXIT_ERROR


def test_l0_pass_and_fail(engine, write_json, capsys):
    ok = write_json("ok.json", {"drift": {"current": {"name": "x", "value": 1.2}, "baseline": {"name": "x", "value": 1.0}}})
    bad = write_json("bad.json", {"workflows": [{"path": "ci.yml", "content": "contents: write"}]})
    assert main(["l0", ok], engine=engine) == EXIT_OK
    capsys.readouterr()
    assert main(["l0", bad], engine=engine) == EXIT_BLOCK
    assert json.loads(capsys.readouterr().out)["passed"] is False


def test_fp_window(engine, capsys):
    assert main(["fp-window", "MD-002", "--count", "10"], engine=engine) == EXIT_OK
    assert json.loads(capsys.readouterr().out)["window_size"] == 0
    assert main(["fp-window", "MD-002", "--since", "2026-03-01T00:00:00Z"], engine=engine) == EXIT_OK
    assert json.loads(capsys.readouterr().out)["since"] == "2026-03-01T00:00:00Z"


def test_fp_window_needs_a_selector(engine):
    with pytest.raises(SystemExit):
        main(["fp-window", "MD-002"], engine=engine)


def test_keygen(capsys):
    assert main(["keygen"]) == EXIT_OK
    keys = json.loads(capsys.readouterr().out)
    assert len(keys["signing_key"]) == 64
    assert len(keys["verify_key"]) == 64


def test_no_command(capsys):
    assert main([]) == EXIT_ERROR
