# tests/test_step_executor.py
# Unit tests for StepExecutor: prompt building, per-agent command lines,
# failure classification and the agent subprocess wrapper.

import importlib.util
import json
import sys
from unittest.mock import patch

# audit-runner.py has a hyphen in the filename, so we must use importlib
# to load it as a module under a valid Python identifier.
spec = importlib.util.spec_from_file_location(
    "audit_runner", "scripts/audit-runner.py"
)
mod = importlib.util.module_from_spec(spec)
spec.loader.exec_module(mod)

AgentKind = mod.AgentKind
ExecutionStep = mod.ExecutionStep
RunConfig = mod.RunConfig
StepExecutor = mod.StepExecutor
ProcessOutput = mod.ProcessOutput
build_agent_command = mod.build_agent_command
describe_process_error = mod.describe_process_error
load_rule_content = mod.load_rule_content
format_step_log = mod.format_step_log
run_agent_process = mod.run_agent_process
build_child_env = mod.build_child_env

STEPS = (
    ExecutionStep(1, "flutter_architecture", True),
    ExecutionStep(2, "flutter_code_quality"),
    ExecutionStep(3, "flutter_report_generator"),
)


def _config(tmp_path, agent=AgentKind.CLAUDE, model="sonnet"):
    rules = tmp_path / "rules"
    rules.mkdir(exist_ok=True)
    return RunConfig(
        bundle_id="flutter_audit",
        bundle_name="flutter-audit",
        display_name="Flutter Project Health Audit",
        tech_prefix="flutter",
        agent=agent,
        model=model,
        steps=STEPS,
        rule_base_path=rules,
        template_path=tmp_path / "template.txt",
        artifacts_dir=tmp_path / "artifacts",
        report_path=tmp_path / "report.txt",
        project_dir=tmp_path,
    )


class FakeAgent:
    """Stands in for run_agent_process and records each invocation."""

    def __init__(self, output):
        self.output = output
        self.calls = []

    def __call__(self, cmd, stdin_text, cwd):
        self.calls.append((cmd, stdin_text, cwd))
        return self.output


# --- build_agent_command tests ---


def test_claude_command_sends_prompt_on_stdin():
    cmd, stdin_text = build_agent_command(AgentKind.CLAUDE, "opus", "PROMPT", ["claude"])
    assert cmd == [
        "claude", "-p", "--output-format", "json",
        "--allowedTools", "Read,Bash,Glob,Grep", "--model", "opus",
    ]
    assert stdin_text == "PROMPT"


def test_cursor_command_prompt_is_last_argument():
    cmd, stdin_text = build_agent_command(AgentKind.CURSOR, "auto", "PROMPT")
    assert cmd == ["agent", "--print", "--output-format", "json", "--force", "--model", "auto", "PROMPT"]
    assert stdin_text is None


def test_gemini_command_without_model():
    """No model means no --model flag; the backend picks its default."""
    cmd, stdin_text = build_agent_command(AgentKind.GEMINI, None, "PROMPT")
    assert cmd == ["gemini", "--yolo", "-o", "json"]
    assert stdin_text == "PROMPT"


# --- rule loading tests ---


def test_load_rule_content_yaml_prompt(tmp_path):
    """YAML rules contribute their prompt field."""
    rule = tmp_path / "r.yaml"
    rule.write_text("name: r\nprompt: |\n  Check the architecture.\n")
    assert load_rule_content(rule) == "Check the architecture.\n"


def test_load_rule_content_markdown_verbatim(tmp_path):
    rule = tmp_path / "r.md"
    rule.write_text("# Rule\nDo things.")
    assert load_rule_content(rule) == "# Rule\nDo things."


# --- prompt tests ---


def test_prompt_includes_rule_and_prior_artifacts(tmp_path):
    """Prior artifacts are embedded in order; failed ones are marked."""
    executor = StepExecutor(_config(tmp_path))
    prompt = executor.build_prompt(
        STEPS[1], "RULE BODY", {"flutter_tool_installer": "FVM ok", "flutter_architecture": ""}
    )
    assert "step 2 of 3 in the Flutter Project Health Audit" in prompt
    assert "=== RULE: flutter_code_quality ===\nRULE BODY" in prompt
    assert "=== ARTIFACT: flutter_tool_installer ===\nFVM ok" in prompt
    assert "=== ARTIFACT: flutter_architecture ===\n(no findings: this step failed)" in prompt
    assert prompt.index("flutter_tool_installer") < prompt.index("ARTIFACT: flutter_architecture")


def test_prompt_first_step_has_no_artifacts(tmp_path):
    executor = StepExecutor(_config(tmp_path))
    assert "None yet" in executor.build_prompt(STEPS[0], "R", {})


def test_report_prompt_includes_template(tmp_path):
    """The report step receives the template content."""
    config = _config(tmp_path)
    config.template_path.write_text("SECTION 1: Overview")
    prompt = StepExecutor(config).build_prompt(STEPS[2], "R", {"a": "x"})
    assert "=== TEMPLATE ===\nSECTION 1: Overview" in prompt
    assert "final audit report" in prompt


def test_report_prompt_without_template(tmp_path):
    prompt = StepExecutor(_config(tmp_path)).build_prompt(STEPS[2], "R", {})
    assert "No report template found" in prompt


def test_cursor_prompt_references_files(tmp_path):
    """Cursor gets paths to read instead of inlined rule, template and artifacts."""
    config = _config(tmp_path, agent=AgentKind.CURSOR, model="auto")
    config.template_path.write_text("SECTION 1: Overview")
    executor = StepExecutor(config)
    prompt = executor.build_prompt(
        STEPS[2], "RULE BODY", {"flutter_architecture": "layered", "flutter_code_quality": ""}
    )
    assert "RULE BODY" not in prompt
    assert "SECTION 1: Overview" not in prompt
    assert "layered" not in prompt
    assert str(executor.rule_file_path(STEPS[2])) in prompt
    assert str(config.template_path) in prompt
    assert f"- flutter_architecture: {config.artifacts_dir / 'flutter_architecture.txt'}\n" in prompt
    assert "flutter_code_quality.txt (empty: this step failed)" in prompt


def test_cursor_argument_stays_small_with_large_artifacts(tmp_path, monkeypatch):
    """Large prior findings never end up in Cursor's command line."""
    config = _config(tmp_path, agent=AgentKind.CURSOR, model="auto")
    (config.rule_base_path / "flutter_code_quality.md").write_text("Check quality.\n" * 5000)
    fake = FakeAgent(ProcessOutput(0, json.dumps({"type": "result", "result": "done"}), ""))
    monkeypatch.setattr(mod, "run_agent_process", fake)

    result = StepExecutor(config).run(STEPS[1], {"flutter_architecture": "finding line\n" * 20000})

    assert result.success
    cmd, stdin_text, _ = fake.calls[0]
    assert stdin_text is None
    assert len(cmd[-1]) < 128 * 1024
    assert "finding line" not in cmd[-1]
    assert str(config.artifacts_dir / "flutter_architecture.txt") in cmd[-1]


def test_cursor_run_real_subprocess_with_large_artifacts(tmp_path):
    """A Cursor-style agent process starts and answers despite large findings."""
    config = _config(tmp_path, agent=AgentKind.CURSOR, model=None)
    (config.rule_base_path / "flutter_code_quality.md").write_text("Check quality.")
    agent_script = tmp_path / "fake_agent.py"
    agent_script.write_text(
        "import json, sys\n"
        "print(json.dumps({'type': 'result', 'result': 'prompt had %d chars' % len(sys.argv[-1])}))\n"
    )
    executor = StepExecutor(config)
    executor.binary = [sys.executable, str(agent_script)]

    result = executor.run(STEPS[1], {"flutter_architecture": "x" * 300_000})

    assert result.success, result.error_message
    assert result.returncode == 0
    assert result.findings.startswith("prompt had ")


# --- StepExecutor.run tests ---


def test_run_success_extracts_findings_and_usage(tmp_path, monkeypatch):
    """A zero exit with a result payload is a successful step."""
    config = _config(tmp_path)
    (config.rule_base_path / "flutter_architecture.md").write_text("Analyse layers.")
    payload = {
        "type": "result",
        "result": "Architecture: layered. Score 8/10",
        "total_cost_usd": 0.02,
        "usage": {"input_tokens": 500, "output_tokens": 100},
    }
    fake = FakeAgent(ProcessOutput(0, json.dumps(payload), ""))
    monkeypatch.setattr(mod, "run_agent_process", fake)

    result = StepExecutor(config).run(STEPS[0], {})

    assert result.success
    assert result.findings == "Architecture: layered. Score 8/10"
    assert result.usage.step_index == 1
    assert result.usage.step_id == "flutter_architecture"
    assert result.usage.input_tokens == 500
    assert result.usage.cost_usd == 0.02
    cmd, stdin_text, cwd = fake.calls[0]
    assert "--model" in cmd and "sonnet" in cmd
    assert "Analyse layers." in stdin_text
    assert cwd == tmp_path


def test_run_missing_rule_is_failure(tmp_path, monkeypatch):
    """A missing rule file fails without spawning the agent."""
    fake = FakeAgent(ProcessOutput(0, "unused", ""))
    monkeypatch.setattr(mod, "run_agent_process", fake)
    result = StepExecutor(_config(tmp_path)).run(STEPS[0], {})
    assert not result.success
    assert result.error_message.startswith("Rule file not found")
    assert result.returncode is None
    assert fake.calls == []


def test_run_nonzero_exit_classified(tmp_path, monkeypatch):
    config = _config(tmp_path)
    (config.rule_base_path / "flutter_architecture.md").write_text("r")
    fake = FakeAgent(ProcessOutput(1, "", "Error: 429 rate_limit exceeded"))
    monkeypatch.setattr(mod, "run_agent_process", fake)
    result = StepExecutor(config).run(STEPS[0], {})
    assert not result.success
    assert "No capacity available" in result.error_message
    assert result.stderr == "Error: 429 rate_limit exceeded"


def test_run_empty_findings_is_failure(tmp_path, monkeypatch):
    config = _config(tmp_path)
    (config.rule_base_path / "flutter_architecture.md").write_text("r")
    monkeypatch.setattr(mod, "run_agent_process", FakeAgent(ProcessOutput(0, "   \n", "")))
    result = StepExecutor(config).run(STEPS[0], {})
    assert not result.success
    assert "no findings" in result.error_message


def test_run_binary_cannot_start(tmp_path, monkeypatch):
    """An OSError from spawning becomes a failed result."""
    config = _config(tmp_path)
    (config.rule_base_path / "flutter_architecture.md").write_text("r")

    def explode(cmd, stdin_text, cwd):
        raise FileNotFoundError("claude")

    monkeypatch.setattr(mod, "run_agent_process", explode)
    result = StepExecutor(config).run(STEPS[0], {})
    assert not result.success
    assert "Could not start" in result.error_message


def test_run_undecodable_rule_is_failure(tmp_path, monkeypatch):
    """A rule file that is not UTF-8 fails the step without spawning the agent."""
    config = _config(tmp_path)
    (config.rule_base_path / "flutter_architecture.md").write_bytes(b"\xff\xfe\x80 rule")
    fake = FakeAgent(ProcessOutput(0, "unused", ""))
    monkeypatch.setattr(mod, "run_agent_process", fake)
    result = StepExecutor(config).run(STEPS[0], {})
    assert not result.success
    assert result.error_message.startswith("Cannot read rule file")
    assert fake.calls == []


def test_run_undecodable_template_is_failure(tmp_path, monkeypatch):
    config = _config(tmp_path)
    (config.rule_base_path / "flutter_report_generator.md").write_text("Write the report.")
    config.template_path.write_bytes(b"\x80\x81 template")
    fake = FakeAgent(ProcessOutput(0, "unused", ""))
    monkeypatch.setattr(mod, "run_agent_process", fake)
    result = StepExecutor(config).run(STEPS[2], {"flutter_architecture": "ok"})
    assert not result.success
    assert result.error_message.startswith("Cannot read report template")
    assert fake.calls == []


def test_run_gemini_uses_yaml_rule(tmp_path, monkeypatch):
    config = _config(tmp_path, agent=AgentKind.GEMINI, model=None)
    (config.rule_base_path / "flutter_architecture.yaml").write_text("prompt: Look at layers")
    output = json.dumps({"response": "done", "stats": {"models": {}}})
    fake = FakeAgent(ProcessOutput(0, output, ""))
    monkeypatch.setattr(mod, "run_agent_process", fake)
    result = StepExecutor(config).run(STEPS[0], {})
    assert result.success
    assert result.findings == "done"
    assert "Look at layers" in fake.calls[0][1]
    assert "--model" not in fake.calls[0][0]


# --- describe_process_error tests ---


def test_describe_process_error_patterns():
    assert "not found" in describe_process_error(
        ProcessOutput(1, "", "model not found: xyz"), AgentKind.CLAUDE, "xyz")
    assert "Authentication failed" in describe_process_error(
        ProcessOutput(1, "", "401 Unauthorized"), AgentKind.GEMINI, "m")
    assert describe_process_error(
        ProcessOutput(3, "", "segfault"), AgentKind.CURSOR, "auto") == "Cursor CLI exited with code 3"


# --- step log tests ---


def test_format_step_log_sections(tmp_path, monkeypatch):
    config = _config(tmp_path)
    (config.rule_base_path / "flutter_architecture.md").write_text("r")
    monkeypatch.setattr(mod, "run_agent_process", FakeAgent(ProcessOutput(2, "out text", "err text")))
    result = StepExecutor(config).run(STEPS[0], {})
    log = format_step_log(result, 3)
    assert "Step: 1/3 flutter_architecture" in log
    assert "Return code: 2" in log
    assert "=== STDOUT ===\nout text" in log
    assert "=== STDERR ===\nerr text" in log


# --- run_agent_process tests ---


def test_run_agent_process_real_subprocess(tmp_path):
    """Prompt goes in on stdin; stdout and stderr are captured separately."""
    script = (
        "import sys; data = sys.stdin.read(); "
        "print(data.upper()); print('warn', file=sys.stderr); sys.exit(4)"
    )
    output = run_agent_process([sys.executable, "-c", script], "hello", tmp_path)
    assert output.returncode == 4
    assert output.stdout.strip() == "HELLO"
    assert output.stderr.strip() == "warn"


def test_build_child_env_strips_claudecode():
    with patch.dict(mod.os.environ, {"CLAUDECODE": "1", "KEEP_ME": "yes"}):
        env = build_child_env()
    assert "CLAUDECODE" not in env
    assert env["KEEP_ME"] == "yes"
