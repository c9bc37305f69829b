"""Tests for the RPC runner: argv building and subprocess supervision."""

from __future__ import annotations

import asyncio
import json
from pathlib import Path

import pytest

from agentrelay.config import AgentConfig
from agentrelay.errors import AgentConfigError
from agentrelay.rpc_runner import (
    RunHandle,
    TemplateContext,
    apply_template,
    build_agent_argv,
    encode_prompt,
    force_rpc_mode,
    read_stderr,
    run_rpc,
)


class TestForceRpcMode:
    def test_appends_when_missing(self):
        assert force_rpc_mode(["pi", "-p"]) == ["pi", "-p", "--mode", "rpc"]

    def test_overwrites_separate_value(self):
        assert force_rpc_mode(["pi", "--mode", "json", "-p"]) == ["pi", "--mode", "rpc", "-p"]

    def test_overwrites_inline_value(self):
        assert force_rpc_mode(["pi", "--mode=text"]) == ["pi", "--mode=rpc"]

    def test_trailing_flag_gets_value(self):
        assert force_rpc_mode(["pi", "--mode"]) == ["pi", "--mode", "rpc"]

    def test_does_not_mutate_input(self):
        argv = ["pi"]
        force_rpc_mode(argv)
        assert argv == ["pi"]


class TestEncodePrompt:
    def test_single_json_line(self):
        raw = encode_prompt("héllo\nworld")
        assert raw.endswith(b"\n")
        assert raw.count(b"\n") == 1
        assert json.loads(raw) == {"type": "prompt", "message": "héllo\nworld"}


class TestTemplates:
    def test_known_and_unknown_keys(self):
        ctx = TemplateContext(body="hi", session_id="s1", sender="+100")
        assert apply_template("{{SessionId}}/{{ From }}/{{Nope}}", ctx) == "s1/+100/"

    def test_body_stripped_defaults_to_body(self):
        assert apply_template("{{BodyStripped}}", TemplateContext(body="x")) == "x"


class TestBuildAgentArgv:
    def _build(self, cfg: AgentConfig, tmp_path: Path, ctx: TemplateContext | None = None, **kwargs):
        options = {
            "sessions_dir": tmp_path / "sessions",
            "is_new_session": True,
            "is_first_turn": True,
            "system_sent": False,
            **kwargs,
        }
        ctx = ctx or TemplateContext(body="do it", session_id="abc")
        return build_agent_argv(cfg, ctx, **options)

    def test_body_goes_to_stdin_not_argv(self, tmp_path):
        inv = self._build(AgentConfig(command=["pi", "-p", "{{Body}}"]), tmp_path)
        assert inv.prompt == "do it"
        assert "do it" not in inv.argv
        assert inv.argv[:2] == ["pi", "-p"]
        assert inv.argv[-2:] == ["--mode", "rpc"]

    def test_new_session_args_and_directory(self, tmp_path):
        inv = self._build(AgentConfig(command=["pi", "{{Body}}"]), tmp_path)
        session_file = str(tmp_path / "sessions" / "abc.jsonl")
        idx = inv.argv.index("--session")
        assert inv.argv[idx + 1] == session_file
        assert "--continue" not in inv.argv
        assert (tmp_path / "sessions").is_dir()

    def test_resume_adds_continue(self, tmp_path):
        inv = self._build(
            AgentConfig(command=["pi", "{{Body}}"]),
            tmp_path,
            is_new_session=False,
            is_first_turn=False,
        )
        assert "--continue" in inv.argv

    def test_no_session_args_without_session_id(self, tmp_path):
        inv = self._build(
            AgentConfig(command=["pi", "{{Body}}"]),
            tmp_path,
            ctx=TemplateContext(body="x"),
        )
        assert "--session" not in inv.argv

    def test_template_inserted_after_program(self, tmp_path):
        cfg = AgentConfig(command=["pi", "{{Body}}"], template="You are {{From}}")
        inv = self._build(cfg, tmp_path, ctx=TemplateContext(body="hey", sender="bob"))
        assert inv.argv[:2] == ["pi", "You are bob"]
        assert inv.prompt == "hey"

    def test_send_system_once_skips_template_after_first_turn(self, tmp_path):
        cfg = AgentConfig(command=["pi", "{{Body}}"], template="SYS", send_system_once=True)
        inv = self._build(cfg, tmp_path, is_new_session=False, is_first_turn=False, system_sent=True)
        assert "SYS" not in inv.argv

    def test_thinking_flag(self, tmp_path):
        inv = self._build(AgentConfig(command=["pi", "{{Body}}"]), tmp_path, think_level="high")
        idx = inv.argv.index("--thinking")
        assert inv.argv[idx + 1] == "high"

    def test_thinking_not_duplicated(self, tmp_path):
        cfg = AgentConfig(command=["pi", "--thinking", "low", "{{Body}}"], think_level="high")
        inv = self._build(cfg, tmp_path)
        assert inv.argv.count("--thinking") == 1

    def test_session_args_after_body(self, tmp_path):
        cfg = AgentConfig(
            command=["pi", "{{Body}}"],
            session_args_new=["--sid", "{{SessionId}}"],
            session_args_before_body=False,
            think_level="low",
        )
        inv = self._build(cfg, tmp_path)
        assert inv.argv == ["pi", "--thinking", "low", "--sid", "abc", "--mode", "rpc"]

    def test_empty_command_rejected(self, tmp_path):
        with pytest.raises(AgentConfigError):
            self._build(AgentConfig(command=[]), tmp_path)

    def test_cwd_expanded(self, tmp_path):
        inv = self._build(AgentConfig(command=["pi", "{{Body}}"], cwd="~/work"), tmp_path)
        assert inv.cwd == str(Path("~/work").expanduser())


class TestRunRpc:
    async def test_streams_lines_in_order(self, fake_agent):
        cmd = fake_agent(
            """
            for i in range(3):
                emit({"type": "tick", "n": i})
            emit("")
            emit("not json")
            """
        )
        lines: list[str] = []
        result = await run_rpc(cmd, None, "go", 10_000, lines.append)

        assert [json.loads(line)["n"] for line in lines[:3]] == [0, 1, 2]
        assert lines[3] == "not json"
        assert len(lines) == 4
        assert result.exit_code == 0
        assert result.signal is None
        assert not result.killed
        assert "not json" in result.stdout

    async def test_prompt_delivered_and_mode_forced(self, fake_agent):
        cmd = fake_agent(
            """
            emit({"prompt": prompt, "argv": argv})
            """
        )
        lines: list[str] = []
        await run_rpc([*cmd, "--mode", "json"], None, "hello agent", 10_000, lines.append)

        seen = json.loads(lines[0])
        assert seen["prompt"] == "hello agent"
        assert seen["argv"][-2:] == ["--mode", "rpc"]

    async def test_exit_code_and_stderr(self, fake_agent):
        cmd = fake_agent(
            """
            sys.stderr.write("bad things\\n")
            sys.exit(3)
            """
        )
        result = await run_rpc(cmd, None, "x", 10_000, lambda line: None)
        assert result.exit_code == 3
        assert "bad things" in result.stderr
        assert not result.killed

    async def test_timeout_kills_process(self, fake_agent):
        cmd = fake_agent(
            """
            emit({"type": "started"})
            time.sleep(30)
            """
        )
        lines: list[str] = []
        result = await run_rpc(cmd, None, "x", 300, lines.append)

        assert result.killed
        assert result.exit_code is None
        assert result.signal == "SIGTERM"
        assert result.duration_ms >= 300
        assert lines and json.loads(lines[0])["type"] == "started"

    async def test_callback_errors_do_not_stop_stream(self, fake_agent):
        cmd = fake_agent(
            """
            emit("a")
            emit("b")
            """
        )
        seen: list[str] = []

        def on_event(line: str) -> None:
            seen.append(line)
            if line == "a":
                raise ValueError("listener bug")

        result = await run_rpc(cmd, None, "x", 10_000, on_event)
        assert seen == ["a", "b"]
        assert result.exit_code == 0

    async def test_on_spawn_handle_can_abort(self, fake_agent):
        cmd = fake_agent(
            """
            time.sleep(30)
            """
        )
        handles: list[RunHandle] = []

        def on_spawn(handle: RunHandle) -> None:
            handles.append(handle)
            asyncio.get_running_loop().call_later(0.1, handle.abort)

        result = await run_rpc(cmd, None, "x", 10_000, lambda line: None, on_spawn=on_spawn)

        assert len(handles) == 1
        assert result.killed
        assert result.duration_ms < 10_000
        assert not handles[0].running
        assert handles[0].abort() is False

    async def test_output_truncated(self, fake_agent):
        cmd = fake_agent(
            """
            for _ in range(20):
                emit("x" * 100)
            """
        )
        lines: list[str] = []
        result = await run_rpc(cmd, None, "x", 10_000, lines.append, max_output_size=500)

        assert len(result.stdout) <= 500
        # Every line still reaches the callback.
        assert len(lines) == 20

    async def test_cancelled_run_terminates_process(self, fake_agent):
        cmd = fake_agent(
            """
            emit({"type": "started"})
            time.sleep(30)
            """
        )
        handles: list[RunHandle] = []
        started = asyncio.Event()

        task = asyncio.create_task(
            run_rpc(cmd, None, "x", 60_000, lambda line: started.set(), on_spawn=handles.append)
        )
        await asyncio.wait_for(started.wait(), timeout=10)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert len(handles) == 1
        assert not handles[0].running

    async def test_spawn_failure_propagates(self, tmp_path):
        with pytest.raises(OSError):
            await run_rpc([str(tmp_path / "missing-binary")], None, "x", 1000, lambda line: None)


class TestReadStderr:
    async def test_keeps_up_to_limit(self):
        stream = asyncio.StreamReader()
        stream.feed_data(b"line one\nline two\n")
        stream.feed_data(b"more\n")
        stream.feed_eof()

        assert await read_stderr(stream, 12, "agent") == "line one\nlin"

    async def test_everything_kept_under_limit(self):
        stream = asyncio.StreamReader()
        stream.feed_data(b"warn: slow\n")
        stream.feed_eof()

        assert await read_stderr(stream, 1000, "agent") == "warn: slow\n"
