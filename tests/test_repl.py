"""Tests for REPL mode: argument parsing, slash commands, repl_loop and main()."""

import os
from unittest.mock import MagicMock, patch

import pytest

from aicli.adapter import ModelReply
from aicli.agent import (
    COMMAND_CANCELLED,
    AgentContext,
    LoopResult,
    _repl_help,
    build_parser,
    handle_command,
    main,
    render_turn,
    repl_loop,
)
from aicli.gate import ConfirmationGate
from aicli.session import ConversationTurn, FunctionCall, Role, SessionStore
from aicli.tools import ToolOutcome, ToolRegistry


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class ScriptedAdapter:
    def __init__(self, replies):
        self.replies = list(replies)
        self.calls = 0

    def generate(self, turns, options=None):
        self.calls += 1
        return self.replies.pop(0)


def _ctx(tmp_path, replies=(), prompt=None, **overrides):
    adapter = ScriptedAdapter(replies)
    values = dict(
        session=SessionStore("gemini-1.5-flash-latest"),
        registry=ToolRegistry(base_dir=str(tmp_path)),
        gate=ConfirmationGate(prompt=prompt or MagicMock(return_value=False)),
        get_adapter=lambda model_id: adapter,
        base_dir=str(tmp_path),
        project_context=False,
    )
    values.update(overrides)
    ctx = AgentContext(**values)
    ctx.adapter = adapter
    return ctx


def _patch_session(inputs):
    """Replace PromptSession with a mock whose .prompt() returns ``inputs``."""
    mock_session = MagicMock()
    mock_session.prompt.side_effect = [
        v() if v in (EOFError, KeyboardInterrupt) else v for v in inputs
    ]
    return patch("prompt_toolkit.PromptSession", return_value=mock_session)


# ---------------------------------------------------------------------------
# Argument parsing
# ---------------------------------------------------------------------------


class TestArgumentParsing:
    def test_question_optional(self):
        args = build_parser().parse_args([])
        assert args.question is None
        assert args.repl is False

    def test_question_with_repl(self):
        args = build_parser().parse_args(["--repl", "initial question"])
        assert args.repl is True
        assert args.question == "initial question"

    def test_verbose_and_quiet_exclusive(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["--verbose", "--quiet"])

    def test_config_backed_flags_unset_by_default(self):
        from aicli.config import _UNSET

        args = build_parser().parse_args(["hi"])
        assert args.model is _UNSET
        assert args.max_iterations is _UNSET
        assert args.project_context is _UNSET

    def test_no_project_context(self):
        args = build_parser().parse_args(["--no-project-context", "hi"])
        assert args.project_context is False


# ---------------------------------------------------------------------------
# Slash commands
# ---------------------------------------------------------------------------


class TestHelpCommand:
    def test_help_lists_commands(self, capsys):
        _repl_help()
        err = capsys.readouterr().err
        for cmd in ("/help", "/model", "/history", "/clear", "/create", "/run", "/quit"):
            assert cmd in err

    def test_help_adds_no_history(self, tmp_path):
        ctx = _ctx(tmp_path)
        assert handle_command("/help", ctx) is True
        assert len(ctx.session) == 0


class TestModelCommand:
    def test_show_current(self, tmp_path, capsys):
        ctx = _ctx(tmp_path)
        handle_command("/model", ctx)
        err = capsys.readouterr().err
        assert "Current model: gemini-1.5-flash-latest" in err
        assert "gemini-1.5-pro-latest" in err

    def test_switch(self, tmp_path):
        ctx = _ctx(tmp_path)
        ctx.session.append(ConversationTurn.user("keep"))
        handle_command("/model gemini-1.5-pro-latest", ctx)
        assert ctx.session.model == "gemini-1.5-pro-latest"
        assert len(ctx.session) == 1

    def test_unknown_model(self, tmp_path, capsys):
        ctx = _ctx(tmp_path)
        handle_command("/model gpt-9", ctx)
        assert ctx.session.model == "gemini-1.5-flash-latest"
        assert "unknown model" in capsys.readouterr().err


class TestHistoryCommand:
    def test_empty(self, tmp_path, capsys):
        handle_command("/history", _ctx(tmp_path))
        assert "history is empty" in capsys.readouterr().err

    def test_renders_turns(self, tmp_path, capsys):
        ctx = _ctx(tmp_path)
        ctx.session.append(ConversationTurn.user("read it"))
        ctx.session.append(ConversationTurn.model_call("read_file", {"path": "a"}))
        ctx.session.append(ConversationTurn.tool_result("read_file", ToolOutcome.ok("abc")))
        ctx.session.append(ConversationTurn.model_text("It says abc."))
        handle_command("/history", ctx)
        err = capsys.readouterr().err
        assert "You: read it" in err
        assert 'Call: read_file({"path": "a"})' in err
        assert "Tool Result (read_file): Success | Output: abc" in err
        assert "AI: It says abc." in err

    def test_render_truncates_output(self):
        turn = ConversationTurn.tool_result(
            "run_command", ToolOutcome(False, output="x" * 400, error="exit 1")
        )
        [(prefix, _, content)] = render_turn(turn)
        assert prefix == "Tool Result (run_command):"
        assert content.startswith("Failed | Output: " + "x" * 150 + "…")
        assert content.endswith("| Error: exit 1")


class TestClearCommand:
    def test_clear_keeps_model(self, tmp_path, capsys):
        ctx = _ctx(tmp_path)
        ctx.session.set_model("gemini-1.5-pro-latest")
        ctx.session.append(ConversationTurn.user("a"))
        ctx.session.append(ConversationTurn.model_text("b"))
        handle_command("/clear", ctx)
        assert len(ctx.session) == 0
        assert ctx.session.model == "gemini-1.5-pro-latest"
        assert "2 turns removed" in capsys.readouterr().err


class TestCreateCommand:
    def test_create_file(self, tmp_path):
        ctx = _ctx(tmp_path)
        handle_command("/create file src/main.py", ctx)
        assert (tmp_path / "src" / "main.py").is_file()
        history = ctx.session.current().history
        assert history[0] == ConversationTurn.user("/create file src/main.py")
        assert history[1].role is Role.MODEL
        assert "Created file" in history[1].parts[0].text

    @pytest.mark.parametrize("kind", ["directory", "dir"])
    def test_create_directory(self, tmp_path, kind):
        ctx = _ctx(tmp_path)
        handle_command(f"/create {kind} build/out", ctx)
        assert (tmp_path / "build" / "out").is_dir()
        assert len(ctx.session) == 2

    def test_invalid_path_reported(self, tmp_path, capsys):
        ctx = _ctx(tmp_path)
        assert handle_command("/create dir a\x00b", ctx) is True
        history = ctx.session.current().history
        assert len(history) == 2
        assert history[1].parts[0].text.startswith("Failed to create directory")
        assert "Failed to create directory" in capsys.readouterr().err

    def test_bad_usage(self, tmp_path, capsys):
        ctx = _ctx(tmp_path)
        handle_command("/create folder x", ctx)
        assert "usage" in capsys.readouterr().err
        assert len(ctx.session) == 0


class TestRunCommand:
    def test_denied(self, tmp_path):
        prompt = MagicMock(return_value=False)
        ctx = _ctx(tmp_path, prompt=prompt)
        handle_command("/run touch made.txt", ctx)
        prompt.assert_called_once()
        assert not (tmp_path / "made.txt").exists()
        history = ctx.session.current().history
        assert history[-1] == ConversationTurn.model_text(COMMAND_CANCELLED)

    def test_approved_records_call_and_result(self, tmp_path):
        ctx = _ctx(tmp_path, prompt=MagicMock(return_value=True))
        handle_command("/run touch made.txt", ctx)
        assert (tmp_path / "made.txt").exists()
        history = ctx.session.current().history
        assert [t.role for t in history] == [Role.USER, Role.MODEL, Role.TOOL]
        assert history[1].parts[0] == FunctionCall("run_command", {"command": "touch made.txt"})
        assert history[2].parts[0].result.success is True

    def test_prompts_even_when_not_risky(self, tmp_path):
        prompt = MagicMock(return_value=False)
        ctx = _ctx(tmp_path, gate=ConfirmationGate(confirm_tools=[], prompt=prompt))
        handle_command("/run ls", ctx)
        prompt.assert_called_once()

    def test_missing_command(self, tmp_path, capsys):
        ctx = _ctx(tmp_path)
        handle_command("/run", ctx)
        assert "usage" in capsys.readouterr().err
        assert len(ctx.session) == 0


class TestUnknownCommand:
    def test_reports_and_adds_nothing(self, tmp_path, capsys):
        ctx = _ctx(tmp_path)
        assert handle_command("/frobnicate", ctx) is True
        assert "unknown command" in capsys.readouterr().err
        assert len(ctx.session) == 0
        assert ctx.adapter.calls == 0


# ---------------------------------------------------------------------------
# repl_loop
# ---------------------------------------------------------------------------


class TestReplLoop:
    @pytest.mark.parametrize("cmd", ["/exit", "/quit"])
    def test_exit_commands(self, tmp_path, cmd):
        ctx = _ctx(tmp_path)
        with _patch_session([cmd]):
            repl_loop(ctx)
        assert len(ctx.session) == 0

    def test_eof_exits(self, tmp_path):
        ctx = _ctx(tmp_path)
        with _patch_session([EOFError]):
            repl_loop(ctx)

    def test_ctrl_c_at_prompt_exits(self, tmp_path):
        ctx = _ctx(tmp_path)
        with _patch_session([KeyboardInterrupt]):
            repl_loop(ctx)

    def test_failed_create_keeps_repl_running(self, tmp_path):
        ctx = _ctx(tmp_path)
        with _patch_session(["/create file a\x00b.txt", "/create dir ok", "/exit"]):
            repl_loop(ctx)
        assert (tmp_path / "ok").is_dir()
        assert len(ctx.session) == 4

    def test_blank_lines_ignored(self, tmp_path):
        ctx = _ctx(tmp_path)
        with _patch_session(["", "   ", "/exit"]):
            repl_loop(ctx)
        assert ctx.adapter.calls == 0

    def test_question_runs_loop(self, tmp_path, capsys):
        ctx = _ctx(tmp_path, replies=[ModelReply(text="Hi there!", finish_reason="stop")])
        with _patch_session(["hello", "/exit"]):
            repl_loop(ctx)
        assert ctx.adapter.calls == 1
        assert [t.role for t in ctx.session.current().history] == [Role.USER, Role.MODEL]
        assert "Hi there!" in capsys.readouterr().out

    def test_history_survives_between_requests(self, tmp_path):
        ctx = _ctx(
            tmp_path,
            replies=[
                ModelReply(text="one", finish_reason="stop"),
                ModelReply(text="two", finish_reason="stop"),
            ],
        )
        with _patch_session(["first", "second", "/exit"]):
            repl_loop(ctx)
        assert len(ctx.session) == 4

    def test_interrupt_during_request_keeps_repl(self, tmp_path):
        ctx = _ctx(tmp_path)
        with (
            _patch_session(["slow", "/exit"]),
            patch("aicli.agent.run_tool_loop", side_effect=KeyboardInterrupt) as mock_loop,
        ):
            repl_loop(ctx)
        assert mock_loop.call_count == 1

    def test_meta_commands_skip_loop(self, tmp_path):
        ctx = _ctx(tmp_path)
        with (
            _patch_session(["/help", "/history", "/model", "/exit"]),
            patch("aicli.agent.run_tool_loop") as mock_loop,
        ):
            repl_loop(ctx)
        assert mock_loop.call_count == 0


# ---------------------------------------------------------------------------
# main()
# ---------------------------------------------------------------------------


@pytest.fixture
def cli_env(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "xdg"))
    monkeypatch.setenv("GEMINI_API_KEY", "test-key")
    return tmp_path


class TestMain:
    def test_version(self, monkeypatch, capsys):
        monkeypatch.setattr("sys.argv", ["ai-cli", "--version"])
        with pytest.raises(SystemExit) as exc:
            main()
        assert exc.value.code == 0
        assert capsys.readouterr().out.strip()

    def test_init_config(self, monkeypatch, capsys):
        monkeypatch.setattr("sys.argv", ["ai-cli", "--init-config", "--project"])
        with pytest.raises(SystemExit):
            main()
        out = capsys.readouterr().out
        assert "<project>/ai-cli.toml" in out
        assert "# max_iterations = 5" in out

    def test_single_shot(self, cli_env, monkeypatch):
        monkeypatch.setattr("sys.argv", ["ai-cli", "what is here?"])
        with patch(
            "aicli.agent.run_tool_loop", return_value=LoopResult("Nothing.", "done", 1)
        ) as mock_loop:
            with pytest.raises(SystemExit) as exc:
                main()
        assert exc.value.code == 0
        assert mock_loop.call_args[0][3] == "what is here?"
        assert mock_loop.call_args[1]["max_iterations"] == 5

    def test_single_shot_error_exit_code(self, cli_env, monkeypatch):
        monkeypatch.setattr("sys.argv", ["ai-cli", "hi"])
        with patch(
            "aicli.agent.run_tool_loop", return_value=LoopResult("Sorry", "error", 1)
        ):
            with pytest.raises(SystemExit) as exc:
                main()
        assert exc.value.code == 1

    def test_project_config_applied(self, cli_env, monkeypatch):
        (cli_env / "ai-cli.toml").write_text(
            'default_model = "gemini-1.5-pro-latest"\nmax_iterations = 8\n'
        )
        monkeypatch.setattr("sys.argv", ["ai-cli", "hi"])
        with patch("aicli.agent.run_tool_loop", return_value=LoopResult(None, "done", 1)) as mock_loop:
            with pytest.raises(SystemExit):
                main()
        session = mock_loop.call_args[0][0]
        assert session.model == "gemini-1.5-pro-latest"
        assert mock_loop.call_args[1]["max_iterations"] == 8

    def test_cli_overrides_config(self, cli_env, monkeypatch):
        (cli_env / "ai-cli.toml").write_text("max_iterations = 8\n")
        monkeypatch.setattr("sys.argv", ["ai-cli", "--max-iterations", "2", "hi"])
        with patch("aicli.agent.run_tool_loop", return_value=LoopResult(None, "done", 1)) as mock_loop:
            with pytest.raises(SystemExit):
                main()
        assert mock_loop.call_args[1]["max_iterations"] == 2

    def test_bad_config_exits_1(self, cli_env, monkeypatch, capsys):
        (cli_env / "ai-cli.toml").write_text("max_iterations = 'many'\n")
        monkeypatch.setattr("sys.argv", ["ai-cli", "hi"])
        with pytest.raises(SystemExit) as exc:
            main()
        assert exc.value.code == 1
        assert "max_iterations" in capsys.readouterr().err

    def test_no_question_enters_repl(self, cli_env, monkeypatch):
        monkeypatch.setattr("sys.argv", ["ai-cli"])
        with patch("aicli.agent.repl_loop") as mock_repl:
            with pytest.raises(SystemExit) as exc:
                main()
        assert exc.value.code == 0
        mock_repl.assert_called_once()

    def test_repl_with_question(self, cli_env, monkeypatch):
        monkeypatch.setattr("sys.argv", ["ai-cli", "--repl", "start here"])
        with (
            patch("aicli.agent.run_tool_loop", return_value=LoopResult(None, "done", 1)) as mock_loop,
            patch("aicli.agent.repl_loop") as mock_repl,
        ):
            with pytest.raises(SystemExit):
                main()
        assert mock_loop.call_count == 1
        mock_repl.assert_called_once()

    def test_env_file_loaded(self, cli_env, monkeypatch):
        # setenv then delenv so monkeypatch removes whatever dotenv writes
        monkeypatch.setenv("AICLI_TEST_KEY_VAR", "")
        monkeypatch.delenv("AICLI_TEST_KEY_VAR")
        (cli_env / ".env").write_text("AICLI_TEST_KEY_VAR=from-dotenv\n")
        monkeypatch.setattr("sys.argv", ["ai-cli", "hi"])
        with patch("aicli.agent.run_tool_loop", return_value=LoopResult(None, "done", 1)):
            with pytest.raises(SystemExit):
                main()
        assert os.environ.get("AICLI_TEST_KEY_VAR") == "from-dotenv"
