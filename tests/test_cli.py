"""Tests for the nodeflow command line."""

import json
import logging

import pytest
from conftest import make_graph

from nodeflow.cli import main, parse_json_arg


@pytest.fixture(autouse=True)
def _restore_root_logger():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)


@pytest.fixture
def token_dir(tmp_path):
    return tmp_path / "tokens"


def write_workflow(directory, graph):
    path = directory / f"{graph.id}.json"
    path.write_text(graph.model_dump_json(indent=2), encoding="utf-8")
    return path


def sum_workflow():
    return make_graph(
        [
            ("Start", "trigger"),
            ("Sum", "aggregate", {"field": "value", "operation": "sum"}),
        ],
        [("Start", "Sum")],
        graph_id="wf-sum",
    )


def run_cli(capsys, *argv):
    code = main(list(argv))
    out = capsys.readouterr().out
    return code, out


def test_validate(tmp_path, capsys):
    valid = write_workflow(tmp_path, sum_workflow())
    invalid = write_workflow(
        tmp_path,
        make_graph([("Start", "trigger"), ("X", "mystery")], [("Start", "X")], graph_id="wf-bad"),
    )

    code, out = run_cli(capsys, "validate", str(valid))
    assert code == 0
    assert "valid" in out

    code, out = run_cli(capsys, "validate", str(invalid))
    assert code == 1
    assert "unknown type 'mystery'" in out


def test_validate_unreadable_file(tmp_path, capsys):
    code = main(["validate", str(tmp_path / "missing.json")])

    assert code == 1
    assert "Cannot read workflow" in capsys.readouterr().err


def test_run_prints_outcome(tmp_path, token_dir, capsys):
    path = write_workflow(tmp_path, sum_workflow())

    code, out = run_cli(
        capsys,
        "--token-dir",
        str(token_dir),
        "run",
        str(path),
        "--input",
        '[{"value": 2}, {"value": 3}]',
    )

    summary = json.loads(out)
    assert code == 0
    assert summary["status"] == "success"
    assert summary["path"] == ["Start", "Sum"]
    assert summary["output"] == [{"value": 5}]


def test_run_input_from_file(tmp_path, token_dir, capsys):
    path = write_workflow(tmp_path, sum_workflow())
    items = tmp_path / "items.json"
    items.write_text('[{"value": 40}, {"value": 2}]')

    code, out = run_cli(
        capsys, "--token-dir", str(token_dir), "run", str(path), "--input", f"@{items}"
    )

    assert json.loads(out)["output"] == [{"value": 42}]


def test_failed_run_exit_code(tmp_path, token_dir, capsys):
    graph = make_graph(
        [("Start", "trigger"), ("Stop", "stop_and_error", {"message": "nope"})],
        [("Start", "Stop")],
        graph_id="wf-stop",
    )
    path = write_workflow(tmp_path, graph)

    code, out = run_cli(capsys, "--token-dir", str(token_dir), "run", str(path))

    summary = json.loads(out)
    assert code == 1
    assert summary["error"]["node"] == "Stop"
    assert summary["error"]["message"] == "nope"


def test_subworkflow_loaded_from_workflow_directory(tmp_path, token_dir, capsys):
    write_workflow(tmp_path, sum_workflow())
    parent = make_graph(
        [("Start", "trigger"), ("Call", "execute_workflow", {"workflow": "wf-sum"})],
        [("Start", "Call")],
        graph_id="wf-parent",
    )
    path = write_workflow(tmp_path, parent)

    code, out = run_cli(
        capsys, "--token-dir", str(token_dir), "run", str(path), "--input", '[{"value": 7}]'
    )

    assert code == 0
    assert json.loads(out)["output"] == [{"value": 7}]


def test_wait_list_and_resume(tmp_path, token_dir, capsys):
    graph = make_graph(
        [
            ("Start", "trigger"),
            ("Approve", "wait", {"reason": "approval"}),
            ("Sum", "aggregate", {"field": "value", "operation": "sum"}),
        ],
        [("Start", "Approve"), ("Approve", "Sum")],
        graph_id="wf-approval",
    )
    path = write_workflow(tmp_path, graph)

    code, out = run_cli(
        capsys, "--token-dir", str(token_dir), "run", str(path), "--input", '[{"value": 1}]'
    )
    waiting = json.loads(out)
    assert code == 0
    assert waiting["status"] == "waiting"
    assert waiting["waiting_at"] == "Approve"
    token_id = waiting["token_id"]

    code, out = run_cli(capsys, "--token-dir", str(token_dir), "tokens", "list")
    listed = json.loads(out)
    assert [t["token_id"] for t in listed] == [token_id]
    assert listed[0]["reason"] == "approval"

    code, out = run_cli(
        capsys,
        "--token-dir",
        str(token_dir),
        "resume",
        token_id,
        "--payload",
        '[{"value": 10}, {"value": 5}]',
    )
    resumed = json.loads(out)
    assert code == 0
    assert resumed["status"] == "success"
    assert resumed["run_id"] == waiting["run_id"]
    assert resumed["output"] == [{"value": 15}]

    code = main(["--token-dir", str(token_dir), "resume", token_id])
    assert code == 1
    assert "already claimed" in capsys.readouterr().err


def test_tokens_delete_and_prune(tmp_path, token_dir, capsys):
    graph = make_graph(
        [("Start", "trigger"), ("Hold", "wait")], [("Start", "Hold")], graph_id="wf-hold"
    )
    path = write_workflow(tmp_path, graph)
    _, out = run_cli(capsys, "--token-dir", str(token_dir), "run", str(path))
    token_id = json.loads(out)["token_id"]

    code, out = run_cli(capsys, "--token-dir", str(token_dir), "tokens", "prune", "--days", "1")
    assert code == 0
    assert "Pruned 0 token(s)" in out

    code, out = run_cli(capsys, "--token-dir", str(token_dir), "tokens", "delete", token_id)
    assert code == 0
    assert f"Deleted {token_id}" in out

    code = main(["--token-dir", str(token_dir), "tokens", "delete", token_id])
    assert code == 1


def test_parse_json_arg(tmp_path):
    payload = tmp_path / "payload.json"
    payload.write_text('{"approved": true}')

    assert parse_json_arg(None) is None
    assert parse_json_arg('{"a": 1}') == {"a": 1}
    assert parse_json_arg(f"@{payload}") == {"approved": True}
    with pytest.raises(ValueError):
        parse_json_arg("{not json")
