# tests/test_cli.py
# Tests for main(): argument handling, config loading, project validation,
# dry-run output and exit codes.

import importlib.util
import json

# audit-runner.py has a hyphen in the filename, so we must use importlib
# to load it as a module under a valid Python identifier.
spec = importlib.util.spec_from_file_location(
    "audit_runner", "scripts/audit-runner.py"
)
mod = importlib.util.module_from_spec(spec)
spec.loader.exec_module(mod)

ProcessOutput = mod.ProcessOutput
load_runner_config = mod.load_runner_config
validate_project = mod.validate_project
main = mod.main

PLAN = """# Flutter Audit

**Rule Execution Order**:
1. `@flutter_architecture` (MANDATORY)
2. `@flutter_code_quality`
3. `@flutter_report_generator`
"""


def _project(tmp_path, plan=PLAN):
    """Create a Flutter project, a plan and an installed rule directory."""
    (tmp_path / "pubspec.yaml").write_text("name: demo\n")
    plan_path = tmp_path / "audit.plan.md"
    plan_path.write_text(plan)
    rules = tmp_path / "rules"
    rules.mkdir()
    for rule in ("flutter_architecture", "flutter_code_quality", "flutter_report_generator"):
        (rules / f"{rule}.md").write_text(f"Rule {rule}")
    return plan_path, rules


class FakeAgent:
    """Answers each step with a canned Claude JSON result."""

    def __init__(self, fail_on=None):
        self.fail_on = fail_on
        self.prompts = []

    def __call__(self, cmd, stdin_text, cwd):
        self.prompts.append(stdin_text)
        if self.fail_on and f"=== RULE: {self.fail_on} ===" in stdin_text:
            return ProcessOutput(1, "", "boom")
        body = "REPORT BODY" if "=== RULE: flutter_report_generator ===" in stdin_text else "ok"
        payload = {"type": "result", "result": body, "usage": {"input_tokens": 1, "output_tokens": 1}}
        return ProcessOutput(0, json.dumps(payload), "")


# --- load_runner_config tests ---


def test_load_runner_config_missing(tmp_path):
    assert load_runner_config(str(tmp_path / "nope.yaml")) == {}


def test_load_runner_config_malformed(tmp_path):
    path = tmp_path / "bad.yaml"
    path.write_text("agents: [unclosed")
    assert load_runner_config(str(path)) == {}


def test_load_runner_config_non_mapping(tmp_path):
    path = tmp_path / "list.yaml"
    path.write_text("- a\n- b\n")
    assert load_runner_config(str(path)) == {}


def test_load_runner_config_valid(tmp_path):
    path = tmp_path / ".audit-runner.yaml"
    path.write_text("reports_dir: out\nagents:\n  preference: [gemini]\n")
    config = load_runner_config(str(path))
    assert config["reports_dir"] == "out"
    assert config["agents"]["preference"] == ["gemini"]


# --- validate_project tests ---


def test_validate_project_flutter(tmp_path):
    assert "No pubspec.yaml" in validate_project("flutter", tmp_path)
    (tmp_path / "pubspec.yaml").write_text("name: x")
    assert validate_project("flutter", tmp_path) is None


def test_validate_project_nestjs_needs_core(tmp_path):
    (tmp_path / "package.json").write_text('{"dependencies": {"express": "4"}}')
    assert "@nestjs/core" in validate_project("nestjs", tmp_path)
    (tmp_path / "package.json").write_text('{"dependencies": {"@nestjs/core": "10"}}')
    assert validate_project("nestjs", tmp_path) is None


def test_validate_project_undecodable_manifest(tmp_path):
    (tmp_path / "package.json").write_bytes(b'{"dependencies": \xff\xfe}')
    assert "Cannot read" in validate_project("nestjs", tmp_path)


def test_validate_project_unknown_tech(tmp_path):
    assert validate_project("cobol", tmp_path) is None


# --- main() tests ---


def test_main_completed_run(tmp_path, monkeypatch):
    """A full run exits 0 and writes the report."""
    plan, rules = _project(tmp_path)
    monkeypatch.chdir(tmp_path)
    fake = FakeAgent()
    monkeypatch.setattr(mod, "run_agent_process", fake)

    code = main(["--plan", str(plan), "--tech", "flutter", "--agent", "claude",
                 "--model", "haiku", "--rules", str(rules)])

    assert code == 0
    assert len(fake.prompts) == 3
    assert (tmp_path / "reports" / "flutter_audit.txt").read_text() == "REPORT BODY"
    assert (tmp_path / "reports" / ".artifacts" / "flutter_code_quality.txt").read_text() == "ok"


def test_main_mandatory_failure_exits_one(tmp_path, monkeypatch):
    plan, rules = _project(tmp_path)
    monkeypatch.chdir(tmp_path)
    fake = FakeAgent(fail_on="flutter_architecture")
    monkeypatch.setattr(mod, "run_agent_process", fake)
    code = main(["--plan", str(plan), "--tech", "flutter", "--agent", "claude",
                 "--model", "haiku", "--rules", str(rules)])
    assert code == 1
    assert len(fake.prompts) == 1


def test_main_config_sets_artifacts_dir(tmp_path, monkeypatch):
    plan, rules = _project(tmp_path)
    (tmp_path / ".audit-runner.yaml").write_text("artifacts_dir: build/audit\n")
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr(mod, "run_agent_process", FakeAgent())
    code = main(["--plan", str(plan), "--tech", "flutter", "--agent", "claude",
                 "--model", "haiku", "--rules", str(rules)])
    assert code == 0
    assert (tmp_path / "build" / "audit" / "flutter_architecture.txt").is_file()


def test_main_dry_run_spawns_nothing(tmp_path, monkeypatch, capsys):
    plan, rules = _project(tmp_path)
    monkeypatch.chdir(tmp_path)
    fake = FakeAgent()
    monkeypatch.setattr(mod, "run_agent_process", fake)
    code = main(["--plan", str(plan), "--tech", "flutter", "--agent", "cursor",
                 "--model", "auto", "--rules", str(rules), "--dry-run"])
    out = capsys.readouterr().out
    assert code == 0
    assert fake.prompts == []
    assert "[DRY RUN] Step 1/3: flutter_architecture ->" in out
    assert "--force --model auto <prompt>" in out
    assert not (tmp_path / "reports" / ".artifacts").exists()


def test_main_missing_plan(tmp_path, monkeypatch, capsys):
    monkeypatch.chdir(tmp_path)
    assert main(["--plan", "missing.md", "--tech", "flutter"]) == 2
    assert "Plan file not found" in capsys.readouterr().out


def test_main_bad_plan(tmp_path, monkeypatch, capsys):
    plan, _ = _project(tmp_path, plan="no steps here\n")
    monkeypatch.chdir(tmp_path)
    assert main(["--plan", str(plan), "--tech", "flutter"]) == 2
    assert "Rule Execution Order" in capsys.readouterr().out


def test_main_cursor_run_passes_artifact_paths(tmp_path, monkeypatch):
    """Cursor steps are told where earlier findings live on disk."""
    plan, rules = _project(tmp_path)
    monkeypatch.chdir(tmp_path)
    commands = []

    def cursor(cmd, stdin_text, cwd):
        commands.append(cmd)
        return ProcessOutput(0, json.dumps({"type": "result", "result": "ok"}), "")

    monkeypatch.setattr(mod, "run_agent_process", cursor)
    code = main(["--plan", str(plan), "--tech", "flutter", "--agent", "cursor",
                 "--model", "auto", "--rules", str(rules)])

    assert code == 0
    artifact = (tmp_path / "reports" / ".artifacts" / "flutter_architecture.txt").resolve()
    assert artifact.read_text() == "ok"
    assert str(artifact) in commands[1][-1]
    assert str(rules.resolve() / "flutter_code_quality.md") in commands[1][-1]


def test_main_invalid_project(tmp_path, monkeypatch, capsys):
    plan, _ = _project(tmp_path)
    (tmp_path / "pubspec.yaml").unlink()
    monkeypatch.chdir(tmp_path)
    assert main(["--plan", str(plan), "--tech", "flutter"]) == 2
    assert "No pubspec.yaml" in capsys.readouterr().out


def test_main_no_agent_available(tmp_path, monkeypatch, capsys):
    plan, _ = _project(tmp_path)
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr(mod.shutil, "which", lambda name: None)
    assert main(["--plan", str(plan), "--tech", "flutter"]) == 2
    assert "No AI CLI found" in capsys.readouterr().out


def test_main_missing_rules_dir(tmp_path, monkeypatch, capsys):
    plan, _ = _project(tmp_path)
    monkeypatch.chdir(tmp_path)
    code = main(["--plan", str(plan), "--tech", "flutter", "--agent", "claude",
                 "--model", "haiku", "--rules", str(tmp_path / "nowhere")])
    assert code == 2
    assert "Skills not found" in capsys.readouterr().out
