import base64
import shutil
import subprocess

import pytest

from labforge.orchestrator.runtime import ContainerRuntimeError, ExecOutput
from labforge.orchestrator.sandbox import (
    build_test_script,
    find_section,
    parse_execution_output,
    parse_section,
    parse_status,
    section_markers,
)


def make_stream(
    syntax_out: str = "",
    run_out: str = "",
    syntax_status: int = 0,
    run_status: int = 0,
    tree: str = "",
) -> str:
    parts = []
    for name, body in [
        ("SYNTAX_OUT", syntax_out),
        ("RUN_OUT", run_out),
        ("META", f"syntax_status={syntax_status}\nrun_status={run_status}"),
        ("TREE", tree),
    ]:
        start, end = section_markers(name)
        parts.append(f"{start}\n{body}\n{end}")
    return "\n".join(parts) + "\n"


def test_parse_valid_script_output():
    raw = make_stream(
        run_out="hello",
        tree="/workspace/run (d 4096 bytes)\n/workspace/run/script.sh (f 18 bytes)",
    )

    result = parse_execution_output(raw, 0)

    assert result.ok
    assert result.syntax_status == 0
    assert result.run_status == 0
    assert result.syntax_output == ""
    assert result.run_output == "hello"
    assert "script.sh (f 18 bytes)" in result.tree
    assert result.raw == raw.strip()


def test_parse_syntax_error_still_reports_run():
    raw = make_stream(
        syntax_out="script.sh: line 1: syntax error near unexpected token `fi'",
        run_out="script.sh: line 1: syntax error near unexpected token `fi'",
        syntax_status=2,
        run_status=2,
    )

    result = parse_execution_output(raw, 0)

    assert not result.ok
    assert result.syntax_status == 2
    assert result.run_status == 2
    assert "syntax error" in result.syntax_output


def test_parse_failing_run():
    raw = make_stream(run_out="partial", run_status=3)

    result = parse_execution_output(raw, 0)

    assert not result.ok
    assert result.syntax_status == 0
    assert result.run_status == 3
    assert result.run_output == "partial"


def test_parse_without_markers_falls_back_to_raw():
    result = parse_execution_output("  bash: base64: command not found\n", 127)

    assert result.syntax_status == 127
    assert result.run_status == 127
    assert result.syntax_output == "bash: base64: command not found"
    assert result.run_output == "bash: base64: command not found"
    assert result.tree == ""
    assert result.status_code == 127


def test_parse_uses_first_start_and_next_end():
    start, end = section_markers("RUN_OUT")
    raw = f"{start}\nfirst\n{end}\n{start}\nsecond\n{end}\n"

    assert find_section(raw, "RUN_OUT") == "first"


def test_find_section_missing_end():
    start, _ = section_markers("TREE")

    assert find_section(f"{start}\ncut off", "TREE") is None
    assert parse_section(f"{start}\ncut off", "TREE") == ""


def test_find_section_end_before_start():
    start, end = section_markers("META")

    assert find_section(f"{end}\n{start}\nbody", "META") is None


@pytest.mark.parametrize(
    "meta, key, expected",
    [
        ("syntax_status=0\nrun_status=3", "run_status", 3),
        ("syntax_status=2\nrun_status=0", "syntax_status", 2),
        ("run_status=abc", "run_status", None),
        ("", "run_status", None),
        ("xrun_status=4", "run_status", None),
    ],
)
def test_parse_status(meta, key, expected):
    assert parse_status(meta, key) == expected


def test_build_test_script_embeds_encoded_script():
    script = "#!/bin/bash\necho 'quotes \"and\" $vars'\n"

    wrapper = build_test_script(script, "/workspace/run-abc", tree_depth=5)

    encoded = base64.b64encode(script.encode()).decode()
    assert f"echo '{encoded}' | base64 -d > script.sh" in wrapper
    assert 'WORK="/workspace/run-abc"' in wrapper
    assert "bash -n script.sh" in wrapper
    assert "-maxdepth 5" in wrapper
    assert 'CAPTURE="$(mktemp -d)"' in wrapper
    for name in ("SYNTAX_OUT", "RUN_OUT", "META", "TREE"):
        start, end = section_markers(name)
        assert wrapper.index(start) < wrapper.index(end)


def test_build_test_script_runs_even_after_syntax_failure():
    wrapper = build_test_script("echo hi", "/tmp/w")

    syntax_line = next(line for line in wrapper.splitlines() if line.startswith("bash -n"))
    run_line = next(line for line in wrapper.splitlines() if line.startswith("/bin/bash script.sh"))
    assert syntax_line.endswith("|| syntax_status=$?")
    assert run_line.endswith("|| run_status=$?")
    assert '2>&1' in run_line


needs_bash = pytest.mark.skipif(
    shutil.which("bash") is None or shutil.which("base64") is None,
    reason="bash and base64 are required",
)


def run_wrapper(script: str, tmp_path):
    workdir = tmp_path / "w"
    proc = subprocess.run(
        ["bash", "-c", build_test_script(script, str(workdir))],
        capture_output=True,
        text=True,
        timeout=30,
    )
    return parse_execution_output(proc.stdout, proc.returncode), workdir


@needs_bash
def test_wrapper_runs_valid_script(tmp_path):
    result, workdir = run_wrapper("echo hi", tmp_path)

    assert result.ok
    assert result.status_code == 0
    assert result.syntax_output == ""
    assert result.run_output == "hi"
    assert f"{workdir}/script.sh (f 7 bytes)" in result.tree


@needs_bash
def test_wrapper_reports_syntax_error_and_still_runs(tmp_path):
    result, _ = run_wrapper('echo "unbalanced\n', tmp_path)

    assert not result.ok
    assert result.syntax_status == 2
    assert result.run_status == 2
    assert "unexpected EOF" in result.syntax_output
    assert "unexpected EOF" in result.run_output


@needs_bash
def test_wrapper_captures_exit_code_and_both_streams(tmp_path):
    result, _ = run_wrapper("echo out\necho err >&2\nexit 3\n", tmp_path)

    assert result.syntax_status == 0
    assert result.run_status == 3
    assert result.run_output == "out\nerr"
    assert result.status_code == 0


@needs_bash
def test_wrapper_replaces_previous_workdir(tmp_path):
    workdir = tmp_path / "w"
    workdir.mkdir()
    (workdir / "stale.txt").write_text("old")

    result, _ = run_wrapper("touch fresh.txt", tmp_path)

    assert result.ok
    assert not (workdir / "stale.txt").exists()
    assert (workdir / "fresh.txt").exists()
    assert "fresh.txt" in result.tree
    assert "stale.txt" not in result.tree


@pytest.mark.asyncio
async def test_test_script_uses_shared_container(sandbox, runtime):
    runtime.exec_handler = lambda cmd, **kwargs: ExecOutput(
        exit_code=0, output=make_stream(run_out="hi") if cmd[0] == "/bin/bash" else ""
    )

    first = await sandbox.test("echo hi")
    second = await sandbox.test("echo hi")

    assert first.ok and second.ok
    assert first.run_output == "hi"
    assert len(runtime.run_calls) == 1
    call = runtime.run_calls[0]
    assert call["name"] == "lab-test-sandbox"
    assert call["mem_limit"] == "256m"
    assert call["tty"] is False


@pytest.mark.asyncio
async def test_test_script_uses_fresh_workdir_and_cleans_up(sandbox, runtime):
    runtime.exec_handler = lambda **kwargs: ExecOutput(exit_code=0, output=make_stream())

    await sandbox.test("echo one")
    await sandbox.test("echo two")

    runs = [c for c in runtime.execs if c["cmd"][0] == "/bin/bash"]
    cleanups = [c for c in runtime.execs if c["cmd"][:2] == ["rm", "-rf"]]
    workdirs = [c["environment"]["HOME"] for c in runs]
    assert len(set(workdirs)) == 2
    assert all(w.startswith("/workspace/run-") for w in workdirs)
    assert [c["cmd"][2] for c in cleanups] == workdirs


@pytest.mark.asyncio
async def test_test_script_cleans_up_after_exec_failure(sandbox, runtime):
    def handler(cmd, **kwargs):
        if cmd[0] == "/bin/bash":
            raise ContainerRuntimeError("exec failed")
        return ExecOutput(exit_code=0, output="")

    runtime.exec_handler = handler

    with pytest.raises(ContainerRuntimeError):
        await sandbox.test("echo hi")

    assert any(c["cmd"][:2] == ["rm", "-rf"] for c in runtime.execs)


@pytest.mark.asyncio
async def test_shared_sandbox_adopts_existing_container(sandbox, runtime):
    existing = runtime.add_container("lab-test-sandbox", status="exited")

    container = await sandbox.shared.acquire()

    assert container is existing
    assert runtime.started == [existing.id]
    assert runtime.run_calls == []


@pytest.mark.asyncio
async def test_shared_sandbox_restarts_stopped_container(sandbox, runtime):
    container = await sandbox.shared.acquire()
    container.status = "exited"

    again = await sandbox.shared.acquire()

    assert again is container
    assert runtime.started == [container.id]


@pytest.mark.asyncio
async def test_shared_sandbox_recreates_vanished_container(sandbox, runtime):
    container = await sandbox.shared.acquire()
    container.removed = True

    replacement = await sandbox.shared.acquire()

    assert replacement is not container
    assert len(runtime.run_calls) == 2


@pytest.mark.asyncio
async def test_preview_runs_as_student_in_new_session(sandbox, runtime, registry):
    runtime.exec_handler = lambda **kwargs: ExecOutput(
        exit_code=0, output=make_stream(run_out="preview")
    )

    session, result = await sandbox.preview("echo preview")

    assert session.session_id in registry
    assert session.lab_type == "custom-preview"
    assert result.run_output == "preview"
    run = runtime.execs[-1]
    assert run["user"] == "student"
    assert run["environment"] == {"HOME": "/home/student"}
    assert 'WORK="/home/student/custom-preview"' in run["cmd"][2]
    await registry.shutdown()
