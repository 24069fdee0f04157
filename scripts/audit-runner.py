#!/usr/bin/env python3
"""
Audit Runner for AI coding agents
Executes a project audit plan step-by-step: deterministic pre-flight steps run
locally, every other step is delegated to an AI CLI (Claude, Cursor or Gemini)
in a fresh process, with per-step artifacts and token/cost tracking.

Usage:
    python scripts/audit-runner.py --plan PATH --tech TECH [--agent NAME] [--model MODEL]
                                   [--rules DIR] [--no-preflight] [--dry-run] [--verbose]

Copyright (c) 2025 Martin Bechard [martin.bechard@DevConsult.ca]
"""

import argparse
import json
import os
import re
import shutil
import subprocess
import sys
import threading
import time
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Callable, Optional

import yaml

# Runner config (optional, read from the target project)
DEFAULT_CONFIG_PATH = ".audit-runner.yaml"
DEFAULT_REPORTS_DIR = "reports"
ARTIFACTS_SUBDIR = ".artifacts"
ARTIFACT_EXTENSION = ".txt"
STEP_LOG_SUBDIR = "logs"
USAGE_REPORT_SUFFIX = ".usage.json"
REPORT_FILE_TEMPLATE = "{tech}_audit.txt"
REPORT_TEMPLATE_FILE = "{tech}_report_template.txt"
# Step identifiers ending with this suffix produce the final consolidated report
REPORT_STEP_SUFFIX = "report_generator"

# Exit codes
EXIT_COMPLETED = 0
EXIT_ABORTED = 1
EXIT_USAGE = 2

# Rule install locations written by the skill installers
CLAUDE_SKILLS_DIR = Path.home() / ".claude" / "skills"
CURSOR_RULES_DIR = Path.home() / ".cursor" / "somnio_rules"
GEMINI_RULES_DIR = Path.home() / ".gemini" / "antigravity" / "somnio_rules"

# Tools Claude may use while analysing the project
CLAUDE_ALLOWED_TOOLS = "Read,Bash,Glob,Grep"

# Characters of stderr surfaced to the operator on failure
ERROR_TAIL_LENGTH = 2000
# Maximum characters of a prompt shown in dry-run preview
DRY_RUN_PROMPT_PREVIEW_LENGTH = 300

LOG_STDOUT_SECTION = "=== STDOUT ==="
LOG_STDERR_SECTION = "=== STDERR ==="
SUMMARY_DIVIDER = "-" * 60

# Global verbose flag
VERBOSE = False

# Environment variables to strip from child agent processes
# CLAUDECODE is set by Claude Code to detect nested sessions; we must remove it
# so the runner can spawn Claude from within a Claude Code session.
STRIPPED_ENV_VARS = ["CLAUDECODE"]

# Known locations for the claude binary
CLAUDE_BINARY_SEARCH_PATHS = [
    "/opt/homebrew/lib/node_modules/@anthropic-ai/claude-code/cli.js",
    "/usr/local/lib/node_modules/@anthropic-ai/claude-code/cli.js",
]


def load_runner_config(config_path: str) -> dict:
    """Load project-level runner config from .audit-runner.yaml.

    Returns the parsed dict, or an empty dict if the file doesn't exist
    or is not a YAML mapping.
    """
    try:
        with open(config_path, "r") as f:
            config = yaml.safe_load(f)
        return config if isinstance(config, dict) else {}
    except (IOError, UnicodeDecodeError, yaml.YAMLError):
        return {}


def build_child_env() -> dict[str, str]:
    """Build a clean environment for spawning agent child processes."""
    env = os.environ.copy()
    for var in STRIPPED_ENV_VARS:
        env.pop(var, None)
    return env


def verbose_log(message: str, prefix: str = "VERBOSE") -> None:
    """Print a verbose log message if verbose mode is enabled."""
    if VERBOSE:
        timestamp = datetime.now().strftime("%H:%M:%S.%f")[:-3]
        print(f"[{timestamp}] [{prefix}] {message}", flush=True)


# =============================================================================
# ERRORS
# =============================================================================

class AuditRunError(Exception):
    """Base class for conditions that stop an audit run."""


class PlanParseError(AuditRunError):
    """The plan has no usable step list or its steps are ambiguous."""


class NoAgentAvailableError(AuditRunError):
    """No AI CLI was found on PATH and none was forced."""


class StepError(AuditRunError):
    """A step failed; carries the step so the abort message can name it."""

    def __init__(self, step: "ExecutionStep", message: str) -> None:
        super().__init__(message)
        self.step = step


class PreflightFailure(StepError):
    """A local pre-flight step failed. `hint` tells the operator how to fix it."""

    def __init__(self, step: "ExecutionStep", message: str, hint: str = "") -> None:
        super().__init__(step, message)
        self.hint = hint


class StepInvocationFailure(StepError):
    """The agent process failed, produced nothing, or could not be started."""

    def __init__(self, step: "ExecutionStep", message: str, stderr: str = "") -> None:
        super().__init__(step, message)
        self.stderr = stderr


class ArtifactIOError(AuditRunError):
    """Reading or writing the artifact directory failed.

    Always fatal, whatever the failing step's mandatory flag says.
    """


# =============================================================================
# DATA MODEL
# =============================================================================

@dataclass(frozen=True)
class ExecutionStep:
    """A single step from the plan's rule execution order."""
    index: int
    identifier: str
    mandatory: bool = False
    annotation: Optional[str] = None

    @property
    def is_report_step(self) -> bool:
        return self.identifier.endswith(REPORT_STEP_SUFFIX)


class AgentKind(Enum):
    """Supported AI CLI backends, in default preference order."""
    CLAUDE = "claude"
    CURSOR = "cursor"
    GEMINI = "gemini"


@dataclass(frozen=True)
class AgentDescriptor:
    """Static facts about one agent backend."""
    kind: AgentKind
    binary: str
    display_name: str
    default_model: str
    available_models: tuple[str, ...]
    rule_extension: str
    install_hint: str


AGENT_DESCRIPTORS: dict[AgentKind, AgentDescriptor] = {
    AgentKind.CLAUDE: AgentDescriptor(
        kind=AgentKind.CLAUDE,
        binary="claude",
        display_name="Claude",
        default_model="haiku",
        available_models=("haiku", "sonnet", "opus"),
        rule_extension=".md",
        install_hint="Claude Code:  https://claude.ai/download",
    ),
    AgentKind.CURSOR: AgentDescriptor(
        kind=AgentKind.CURSOR,
        binary="agent",
        display_name="Cursor",
        default_model="auto",
        available_models=(
            "auto", "sonnet-4.5", "sonnet-4.5-thinking", "opus-4.5",
            "opus-4.5-thinking", "composer-1", "gpt-5.2", "gpt-5.2-codex",
            "gemini-3-pro", "gemini-3-flash", "grok",
        ),
        rule_extension=".md",
        install_hint="Cursor CLI:   https://docs.cursor.com/cli",
    ),
    AgentKind.GEMINI: AgentDescriptor(
        kind=AgentKind.GEMINI,
        binary="gemini",
        display_name="Gemini",
        default_model="gemini-3-flash",
        available_models=(
            "gemini-3-flash", "gemini-2.5-flash", "gemini-2.5-pro", "gemini-3-pro",
        ),
        rule_extension=".yaml",
        install_hint="Gemini CLI:   npm install -g @google/gemini-cli",
    ),
}

DEFAULT_AGENT_PREFERENCE: list[AgentKind] = [
    AgentKind.CLAUDE, AgentKind.CURSOR, AgentKind.GEMINI,
]


@dataclass(frozen=True)
class RunConfig:
    """Resolved configuration for one audit run. Never mutated once built."""
    bundle_id: str
    bundle_name: str
    display_name: str
    tech_prefix: str
    agent: AgentKind
    model: Optional[str]
    steps: tuple[ExecutionStep, ...]
    rule_base_path: Path
    template_path: Path
    artifacts_dir: Path
    report_path: Path
    project_dir: Path
    preflight_enabled: bool = True

    @property
    def descriptor(self) -> AgentDescriptor:
        return AGENT_DESCRIPTORS[self.agent]


# =============================================================================
# PLAN LOADING
# =============================================================================

# Matches "**Rule Execution Order**:" with or without the bold markers
RULE_ORDER_HEADER_PATTERN = re.compile(r"\*{0,2}Rule Execution Order\*{0,2}\s*:")

# Matches numbered step lines like: 2. `@flutter_version_alignment` (MANDATORY - ...)
STEP_LINE_PATTERN = re.compile(r"^\s*(\d+)\.\s+`@(\w+)`\s*(.*?)\s*$")

ANNOTATION_PATTERN = re.compile(r"\((.+)\)")
MANDATORY_PATTERN = re.compile(r"\bMANDATORY\b", re.IGNORECASE)

YAML_PLAN_SUFFIXES = (".yaml", ".yml")


def _is_new_section(line: str) -> bool:
    """Whether a line starts a new markdown section rather than continuing a step."""
    trimmed = line.lstrip()
    return trimmed.startswith("**") or trimmed.startswith("#") or trimmed.startswith("- ")


def _check_steps(steps: list[ExecutionStep]) -> list[ExecutionStep]:
    """Reject empty lists, duplicate identifiers and out-of-order numbering."""
    if not steps:
        raise PlanParseError("No execution steps found in plan")

    seen: dict[str, int] = {}
    previous_index = 0
    for step in steps:
        if step.identifier in seen:
            raise PlanParseError(
                f"Duplicate step identifier '{step.identifier}' "
                f"(steps {seen[step.identifier]} and {step.index})"
            )
        if step.index <= previous_index:
            raise PlanParseError(
                f"Step numbering is not strictly ascending: "
                f"{previous_index} is followed by {step.index}"
            )
        seen[step.identifier] = step.index
        previous_index = step.index
    return steps


def parse_plan(plan_content: str) -> list[ExecutionStep]:
    """Parse the "Rule Execution Order" section of a markdown plan.

    Expects a section like:

        **Rule Execution Order**:
        1. `@flutter_tool_installer`
        2. `@flutter_version_alignment` (MANDATORY - stops if FVM global fails)

    The list ends at the first blank line or new markdown section after the
    first step. Indented lines in between are wrapped annotations and are
    skipped. A step is mandatory only when its text carries the MANDATORY
    token.
    """
    header = RULE_ORDER_HEADER_PATTERN.search(plan_content)
    if header is None:
        raise PlanParseError("No 'Rule Execution Order' section found in plan")

    steps: list[ExecutionStep] = []
    found_first_step = False

    for line in plan_content[header.end():].split("\n"):
        match = STEP_LINE_PATTERN.match(line)
        if match:
            found_first_step = True
            remainder = match.group(3).strip()
            annotation_match = ANNOTATION_PATTERN.search(remainder)
            steps.append(ExecutionStep(
                index=int(match.group(1)),
                identifier=match.group(2),
                mandatory=bool(MANDATORY_PATTERN.search(remainder)),
                annotation=annotation_match.group(1).strip() if annotation_match else None,
            ))
        elif found_first_step and not line.strip():
            break
        elif found_first_step and _is_new_section(line):
            break

    return _check_steps(steps)


def parse_yaml_plan(plan_content: str) -> list[ExecutionStep]:
    """Parse a YAML plan with a top-level `steps:` list.

    Each entry is either a bare identifier or a mapping with `id` and
    optional `mandatory`, `annotation` and `index` keys. Without an explicit
    index, steps are numbered 1..N in list order.
    """
    try:
        plan = yaml.safe_load(plan_content)
    except yaml.YAMLError as e:
        raise PlanParseError(f"Plan is not valid YAML: {e}") from e

    raw_steps = plan.get("steps") if isinstance(plan, dict) else None
    if not isinstance(raw_steps, list):
        raise PlanParseError("No 'steps' list found in plan")

    steps: list[ExecutionStep] = []
    for position, entry in enumerate(raw_steps, start=1):
        if isinstance(entry, str):
            entry = {"id": entry}
        if not isinstance(entry, dict) or not entry.get("id"):
            raise PlanParseError(f"Step {position} has no 'id'")
        try:
            index = int(entry.get("index", position))
        except (TypeError, ValueError) as e:
            raise PlanParseError(f"Step {position} has an invalid index: {entry.get('index')!r}") from e
        mandatory = entry.get("mandatory", False)
        if not isinstance(mandatory, bool):
            raise PlanParseError(f"Step {position} has a non-boolean 'mandatory' value: {mandatory!r}")
        annotation = entry.get("annotation")
        steps.append(ExecutionStep(
            index=index,
            identifier=str(entry["id"]).lstrip("@"),
            mandatory=mandatory,
            annotation=str(annotation) if annotation else None,
        ))

    return _check_steps(steps)


def load_plan(plan_path: str) -> list[ExecutionStep]:
    """Load a markdown or YAML plan file and return its ordered steps."""
    try:
        content = Path(plan_path).read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        raise PlanParseError(f"Cannot read plan {plan_path}: {e}") from e

    if plan_path.lower().endswith(YAML_PLAN_SUFFIXES):
        return parse_yaml_plan(content)
    return parse_plan(content)


def plan_subdir_from_path(plan_path: str) -> str:
    """Derive the plan bundle directory name from a plan path.

    `flutter-plans/flutter_project_health_audit/plan/flutter.plan.md`
    -> `flutter_project_health_audit`.
    """
    parent = Path(plan_path).resolve().parent
    if parent.name == "plan":
        return parent.parent.name
    return parent.name


# =============================================================================
# AGENT RESOLUTION
# =============================================================================

def agent_descriptors(config: dict) -> dict[AgentKind, AgentDescriptor]:
    """Return the agent descriptors with model lists extended from config.

    `agents.models.<kind>` entries are appended after the built-in models;
    the built-in default model never changes.
    """
    extra_models = config.get("agents", {}).get("models", {}) if isinstance(config.get("agents"), dict) else {}
    descriptors = dict(AGENT_DESCRIPTORS)
    for kind, descriptor in AGENT_DESCRIPTORS.items():
        extra = extra_models.get(kind.value) if isinstance(extra_models, dict) else None
        if not extra:
            continue
        models = list(descriptor.available_models)
        for model in extra:
            if str(model) not in models:
                models.append(str(model))
        descriptors[kind] = replace(descriptor, available_models=tuple(models))
    return descriptors


def agent_preference(config: dict) -> list[AgentKind]:
    """Return the detection order, taken from `agents.preference` when configured.

    This is where previously configured agents are injected; unknown names
    are ignored and unlisted agents keep their default relative order.
    """
    agents = config.get("agents", {})
    configured = agents.get("preference", []) if isinstance(agents, dict) else []
    order: list[AgentKind] = []
    for name in configured or []:
        try:
            kind = AgentKind(str(name).lower())
        except ValueError:
            print(f"[WARNING] Unknown agent in config preference: {name}")
            continue
        if kind not in order:
            order.append(kind)
    order.extend(kind for kind in DEFAULT_AGENT_PREFERENCE if kind not in order)
    return order


def detect_agents(preference: Optional[list[AgentKind]] = None) -> list[AgentKind]:
    """Return every agent whose CLI binary is on PATH, in preference order."""
    available = []
    for kind in preference or DEFAULT_AGENT_PREFERENCE:
        binary = AGENT_DESCRIPTORS[kind].binary
        path = shutil.which(binary)
        verbose_log(f"Lookup {binary}: {path or 'not found'}", "AGENT")
        if path:
            available.append(kind)
    return available


def select_model(descriptor: AgentDescriptor, answer: str) -> str:
    """Map an operator answer to a model.

    Empty answers pick the default model. A 1-based number or a listed
    model name picks that model; anything else falls back to the default.
    """
    answer = answer.strip()
    if not answer:
        return descriptor.default_model
    if answer.isdigit():
        position = int(answer)
        if 1 <= position <= len(descriptor.available_models):
            return descriptor.available_models[position - 1]
    elif answer in descriptor.available_models:
        return answer
    print(f"[WARNING] Invalid selection '{answer}', using {descriptor.default_model}.")
    return descriptor.default_model


def prompt_model_choice(descriptor: AgentDescriptor) -> str:
    """List the agent's models and ask the operator to pick one."""
    if not sys.stdin.isatty():
        verbose_log("stdin is not a terminal, using the default model", "AGENT")
        return descriptor.default_model

    print(f"\nAvailable {descriptor.display_name} models:")
    for position, model in enumerate(descriptor.available_models, start=1):
        tag = " (default)" if model == descriptor.default_model else ""
        print(f"  {position}. {model}{tag}")
    try:
        answer = input(f"Select model (1-{len(descriptor.available_models)}, Enter for default): ")
    except EOFError:
        answer = ""
    return select_model(descriptor, answer)


def resolve_agent(
    explicit_agent: Optional[AgentKind],
    explicit_model: Optional[str],
    detected_agents: list[AgentKind],
    choose_model: Optional[Callable[[AgentDescriptor], str]] = None,
    descriptors: Optional[dict[AgentKind, AgentDescriptor]] = None,
) -> tuple[AgentKind, str]:
    """Pick the agent backend and model for the run.

    An explicit agent is used as given; otherwise the first detected agent
    wins. An explicit model is used verbatim so new models work before
    they are listed. Without one, `choose_model` (interactive by default)
    selects from the agent's models.
    """
    descriptors = descriptors or AGENT_DESCRIPTORS

    if explicit_agent is not None:
        agent = explicit_agent
        if agent not in detected_agents and shutil.which(descriptors[agent].binary) is None:
            print(f"[WARNING] '{descriptors[agent].binary}' not found on PATH; "
                  f"steps will fail unless it becomes available.")
    elif detected_agents:
        agent = detected_agents[0]
    else:
        hints = "\n".join(f"  {d.install_hint}" for d in descriptors.values())
        raise NoAgentAvailableError(
            "No AI CLI found. Please install claude, agent (Cursor CLI), or gemini.\n" + hints
        )

    if explicit_model:
        return agent, explicit_model

    chooser = choose_model or prompt_model_choice
    return agent, chooser(descriptors[agent])


def rule_base_path(agent: AgentKind, bundle_name: str, plan_subdir: str) -> Path:
    """Return where the skill installer puts rule files for the agent.

    - Claude: `~/.claude/skills/{bundle_name}/rules/`
    - Cursor: `~/.cursor/somnio_rules/{plan_subdir}/cursor_rules/`
    - Gemini: `~/.gemini/antigravity/somnio_rules/{plan_subdir}/cursor_rules/`
    """
    if agent is AgentKind.CLAUDE:
        return CLAUDE_SKILLS_DIR / bundle_name / "rules"
    if agent is AgentKind.CURSOR:
        return CURSOR_RULES_DIR / plan_subdir / "cursor_rules"
    return GEMINI_RULES_DIR / plan_subdir / "cursor_rules"


def template_path(agent: AgentKind, bundle_name: str, plan_subdir: str, template_file: str) -> Path:
    """Return the installed report template path for the agent."""
    if agent is AgentKind.CLAUDE:
        return CLAUDE_SKILLS_DIR / bundle_name / "templates" / template_file
    return rule_base_path(agent, bundle_name, plan_subdir) / "templates" / template_file


def verify_rule_installation(agent: AgentKind, rule_base: Path, rule_ids: list[str]) -> Optional[str]:
    """Check that rules are installed where the agent expects them.

    Returns None if OK, or an error message describing the problem. Only the
    directory and the first rule are checked here; a missing rule for a later
    step surfaces when that step runs.
    """
    descriptor = AGENT_DESCRIPTORS[agent]
    if not rule_base.is_dir():
        return (
            f"Skills not found at: {rule_base}\n"
            f"Install the audit skills for {descriptor.display_name} first, "
            f"or point --rules at the rule directory."
        )
    if rule_ids:
        first_rule = rule_base / f"{rule_ids[0]}{descriptor.rule_extension}"
        if not first_rule.is_file():
            return (
                f"Rule file not found: {first_rule}\n"
                f"Skills may be outdated. Reinstall them for {descriptor.display_name}."
            )
    return None


# =============================================================================
# USAGE TRACKING
# =============================================================================

@dataclass(frozen=True)
class UsageRecord:
    """Token usage, cost and timing for one step.

    Token and cost fields are None when the backend does not report them.
    """
    step_index: int = 0
    step_id: str = ""
    input_tokens: Optional[int] = None
    output_tokens: Optional[int] = None
    cache_read_tokens: Optional[int] = None
    cache_creation_tokens: Optional[int] = None
    elapsed_seconds: float = 0.0
    cost_usd: Optional[float] = None
    preflight: bool = False

    @property
    def total_input_tokens(self) -> Optional[int]:
        """Input tokens including cache reads and writes."""
        if self.input_tokens is None:
            return None
        return self.input_tokens + (self.cache_read_tokens or 0) + (self.cache_creation_tokens or 0)


def _optional_int(value) -> Optional[int]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return int(value)


def _optional_float(value) -> Optional[float]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return float(value)


def _load_json_payload(raw_output: str) -> Optional[dict]:
    """Return the structured result object from agent stdout.

    Handles a single JSON document (`--output-format json`) and stream-json
    output, where the last `result` event carries the usage data.
    """
    text = raw_output.strip()
    if not text:
        return None
    try:
        payload = json.loads(text)
        return payload if isinstance(payload, dict) else None
    except ValueError:
        pass

    for line in reversed(text.splitlines()):
        try:
            event = json.loads(line)
        except ValueError:
            continue
        if isinstance(event, dict) and event.get("type") == "result":
            return event
    return None


class AgentOutputParser:
    """Reads findings and usage from an agent's stdout.

    The base parser recognizes no usage markers: every metric stays None
    and the whole stdout is treated as findings.
    """

    findings_key = "result"

    def extract_usage(self, raw_output: str) -> UsageRecord:
        return UsageRecord()

    def extract_findings(self, raw_output: str) -> str:
        payload = _load_json_payload(raw_output)
        if payload is None:
            return raw_output.strip()
        findings = payload.get(self.findings_key)
        return findings.strip() if isinstance(findings, str) else ""


class ClaudeOutputParser(AgentOutputParser):
    """Claude CLI JSON: `usage` block plus `total_cost_usd`."""

    def extract_usage(self, raw_output: str) -> UsageRecord:
        payload = _load_json_payload(raw_output)
        if payload is None:
            return UsageRecord()
        usage = payload.get("usage")
        usage = usage if isinstance(usage, dict) else {}
        return UsageRecord(
            input_tokens=_optional_int(usage.get("input_tokens")),
            output_tokens=_optional_int(usage.get("output_tokens")),
            cache_read_tokens=_optional_int(usage.get("cache_read_input_tokens")),
            cache_creation_tokens=_optional_int(usage.get("cache_creation_input_tokens")),
            cost_usd=_optional_float(payload.get("total_cost_usd")),
        )


class CursorOutputParser(AgentOutputParser):
    """Cursor CLI JSON exposes the answer but no token usage."""


class GeminiOutputParser(AgentOutputParser):
    """Gemini CLI JSON: per-model token counts under `stats.models`, no cost."""

    findings_key = "response"

    def extract_usage(self, raw_output: str) -> UsageRecord:
        payload = _load_json_payload(raw_output)
        stats = payload.get("stats") if payload else None
        models = stats.get("models") if isinstance(stats, dict) else None
        if not isinstance(models, dict):
            return UsageRecord()

        prompt_tokens = 0
        candidate_tokens = 0
        reported = False
        for model_stats in models.values():
            tokens = model_stats.get("tokens") if isinstance(model_stats, dict) else None
            if isinstance(tokens, dict):
                reported = True
                prompt_tokens += _optional_int(tokens.get("prompt")) or 0
                candidate_tokens += _optional_int(tokens.get("candidates")) or 0
        if not reported:
            # No counts at all is unknown usage, not zero usage
            return UsageRecord()
        return UsageRecord(input_tokens=prompt_tokens, output_tokens=candidate_tokens)


OUTPUT_PARSERS: dict[AgentKind, AgentOutputParser] = {
    AgentKind.CLAUDE: ClaudeOutputParser(),
    AgentKind.CURSOR: CursorOutputParser(),
    AgentKind.GEMINI: GeminiOutputParser(),
}


def output_parser_for(agent: AgentKind) -> AgentOutputParser:
    return OUTPUT_PARSERS.get(agent, AgentOutputParser())


def format_duration(seconds: float) -> str:
    """Format seconds as `42s` or `3m 5s`."""
    seconds = int(round(seconds))
    if seconds < 60:
        return f"{seconds}s"
    return f"{seconds // 60}m {seconds % 60}s"


def format_tokens(tokens: Optional[int]) -> str:
    """Format a token count in K notation (38200 -> 38.2K); None -> '-'."""
    if tokens is None:
        return "-"
    if tokens < 1000:
        return str(tokens)
    return f"{tokens / 1000:.1f}K"


@dataclass
class RunSummary:
    """Run-level totals. Built once, after the last step ran or the run aborted."""
    state: str
    total_input_tokens: int = 0
    total_output_tokens: int = 0
    total_cost_usd: Optional[float] = None
    total_wall_time: float = 0.0
    preflight_wall_time: float = 0.0
    agent_wall_time: float = 0.0
    steps_run: int = 0
    steps_failed: int = 0
    records: list[UsageRecord] = field(default_factory=list)


class RunUsageTracker:
    """Accumulates per-step usage records across an audit run."""

    def __init__(self) -> None:
        self.records: list[UsageRecord] = []

    def extract(self, raw_output: str, agent: AgentKind) -> UsageRecord:
        """Parse usage from raw agent output.

        Usage is observability only: unexpected payload shapes produce an
        empty record rather than failing the step.
        """
        try:
            return output_parser_for(agent).extract_usage(raw_output)
        except (AttributeError, TypeError, ValueError) as e:
            verbose_log(f"Could not parse usage from {agent.value} output: {e}", "USAGE")
            return UsageRecord()

    def record(self, usage: UsageRecord) -> None:
        """Record usage for a step that ran. Records are never revised."""
        self.records.append(usage)

    def summarize(self, state: str, steps_failed: int, total_wall_time: float) -> RunSummary:
        """Aggregate recorded usage. Missing metrics count as zero; cost stays
        None unless at least one step reported it."""
        summary = RunSummary(
            state=state,
            total_wall_time=total_wall_time,
            steps_run=len(self.records),
            steps_failed=steps_failed,
            records=list(self.records),
        )
        for usage in self.records:
            summary.total_input_tokens += usage.total_input_tokens or 0
            summary.total_output_tokens += usage.output_tokens or 0
            if usage.cost_usd is not None:
                summary.total_cost_usd = (summary.total_cost_usd or 0.0) + usage.cost_usd
            if usage.preflight:
                summary.preflight_wall_time += usage.elapsed_seconds
            else:
                summary.agent_wall_time += usage.elapsed_seconds
        return summary

    @staticmethod
    def format_step_line(usage: UsageRecord) -> str:
        """Format a one-line usage summary for a step."""
        if usage.preflight:
            return f"[Usage] {usage.step_id}: pre-flight  Time: {format_duration(usage.elapsed_seconds)}"
        line = (
            f"[Usage] {usage.step_id}: IT: {format_tokens(usage.total_input_tokens)}  "
            f"OT: {format_tokens(usage.output_tokens)}  "
            f"Time: {format_duration(usage.elapsed_seconds)}"
        )
        if usage.cost_usd is not None:
            line += f"  Cost: ${usage.cost_usd:.2f}"
        return line

    def format_final_summary(self, summary: RunSummary) -> str:
        """Format the usage summary printed at the end of a run."""
        lines = ["\n=== Usage Summary ==="]
        lines.extend("  " + self.format_step_line(usage)[len("[Usage] "):] for usage in summary.records)
        lines.append(SUMMARY_DIVIDER)
        lines.append(
            f"Total tokens  -  Input: {format_tokens(summary.total_input_tokens)}  "
            f"Output: {format_tokens(summary.total_output_tokens)}"
        )
        if summary.total_cost_usd is not None:
            lines.append(f"Total cost    -  ${summary.total_cost_usd:.2f}")
        lines.append(
            f"Total time    -  {format_duration(summary.total_wall_time)}  "
            f"(AI: {format_duration(summary.agent_wall_time)} | "
            f"Pre-flight: {format_duration(summary.preflight_wall_time)})"
        )
        lines.append(SUMMARY_DIVIDER)
        return "\n".join(lines)

    def write_report(self, summary: RunSummary, config: RunConfig, report_path: Path) -> Path:
        """Write a JSON usage report with per-step and total usage."""
        report = {
            "bundle": config.bundle_name,
            "agent": config.agent.value,
            "model": config.model,
            "state": summary.state,
            "completed_at": datetime.now().isoformat(),
            "total": {
                "input_tokens": summary.total_input_tokens,
                "output_tokens": summary.total_output_tokens,
                "cost_usd": summary.total_cost_usd,
                "wall_time_seconds": round(summary.total_wall_time, 3),
                "preflight_seconds": round(summary.preflight_wall_time, 3),
                "agent_seconds": round(summary.agent_wall_time, 3),
                "steps_run": summary.steps_run,
                "steps_failed": summary.steps_failed,
            },
            "steps": [
                {
                    "index": usage.step_index,
                    "id": usage.step_id,
                    "preflight": usage.preflight,
                    "input_tokens": usage.input_tokens,
                    "output_tokens": usage.output_tokens,
                    "cache_read_tokens": usage.cache_read_tokens,
                    "cache_creation_tokens": usage.cache_creation_tokens,
                    "cost_usd": usage.cost_usd,
                    "elapsed_seconds": round(usage.elapsed_seconds, 3),
                }
                for usage in summary.records
            ],
        }
        try:
            report_path.parent.mkdir(parents=True, exist_ok=True)
            with open(report_path, "w") as f:
                json.dump(report, f, indent=2)
        except OSError as e:
            raise ArtifactIOError(f"Failed to write usage report {report_path}: {e}") from e
        return report_path


# =============================================================================
# ARTIFACTS
# =============================================================================

class ArtifactManager:
    """Owns the artifact directory and the final report for one run.

    Artifacts live at `<artifacts_dir>/<step identifier>.txt`; raw agent
    logs go to `<artifacts_dir>/logs/`. Every filesystem failure is raised
    as ArtifactIOError.
    """

    def __init__(self, artifacts_dir: Path, report_path: Path) -> None:
        self.artifacts_dir = Path(artifacts_dir)
        self.report_path = Path(report_path)
        self._written: list[str] = []

    @property
    def usage_report_path(self) -> Path:
        return self.report_path.with_suffix(USAGE_REPORT_SUFFIX)

    @property
    def logs_dir(self) -> Path:
        return self.artifacts_dir / STEP_LOG_SUBDIR

    def artifact_path(self, identifier: str) -> Path:
        return self.artifacts_dir / f"{identifier}{ARTIFACT_EXTENSION}"

    def reset(self) -> int:
        """Delete previous artifacts, step logs, the report and usage report.

        Only files this runner writes are removed; anything else sharing the
        artifacts directory is left alone. Returns the number of artifact
        files removed. Must run before the first step so no step ever reads
        a stale artifact.
        """
        removed = 0
        try:
            if self.artifacts_dir.is_dir():
                for stale in self.artifacts_dir.glob(f"*{ARTIFACT_EXTENSION}"):
                    if stale.is_file():
                        stale.unlink()
                        removed += 1
                if self.logs_dir.is_dir():
                    shutil.rmtree(self.logs_dir)
            for stale in (self.report_path, self.usage_report_path):
                if stale.exists():
                    stale.unlink()
            self.artifacts_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise ArtifactIOError(f"Failed to clean previous run in {self.artifacts_dir}: {e}") from e
        self._written = []
        return removed

    def write(self, identifier: str, content: str) -> Path:
        """Persist one step's findings, overwriting any earlier content."""
        path = self.artifact_path(identifier)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(content, encoding="utf-8")
        except OSError as e:
            raise ArtifactIOError(f"Failed to write artifact {path}: {e}") from e
        if identifier not in self._written:
            self._written.append(identifier)
        return path

    def read_all(self) -> dict[str, str]:
        """Return every artifact written since reset, in write order."""
        artifacts = {}
        for identifier in self._written:
            path = self.artifact_path(identifier)
            try:
                artifacts[identifier] = path.read_text(encoding="utf-8")
            except OSError as e:
                raise ArtifactIOError(f"Failed to read artifact {path}: {e}") from e
        return artifacts

    def write_report(self, content: str) -> Path:
        """Persist the final consolidated report."""
        try:
            self.report_path.parent.mkdir(parents=True, exist_ok=True)
            self.report_path.write_text(content, encoding="utf-8")
        except OSError as e:
            raise ArtifactIOError(f"Failed to write report {self.report_path}: {e}") from e
        return self.report_path

    def write_log(self, step: ExecutionStep, content: str) -> Path:
        """Save raw agent output for a step, for postmortem debugging."""
        path = self.logs_dir / f"step-{step.index:02d}-{step.identifier}.log"
        try:
            self.logs_dir.mkdir(parents=True, exist_ok=True)
            path.write_text(content, encoding="utf-8")
        except OSError as e:
            raise ArtifactIOError(f"Failed to write step log {path}: {e}") from e
        return path


# =============================================================================
# LOCAL COMMANDS
# =============================================================================

@dataclass
class CommandResult:
    """Outcome of a local pre-flight command."""
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    def tail(self, limit: int = 300) -> str:
        text = (self.stderr.strip() or self.stdout.strip())
        return text[-limit:]


def run_local_command(cmd, cwd: Path) -> CommandResult:
    """Run a command in the target project and capture its output.

    `cmd` is an argument list, or a string run through the shell (used for
    commands declared in the config file).
    """
    shell = isinstance(cmd, str)
    display = cmd if shell else " ".join(cmd)
    verbose_log(f"Running: {display} (cwd={cwd})", "PREFLIGHT")
    try:
        result = subprocess.run(
            cmd,
            cwd=str(cwd),
            shell=shell,
            stdin=subprocess.DEVNULL,
            capture_output=True,
            text=True,
            env=build_child_env(),
        )
    except FileNotFoundError as e:
        return CommandResult(returncode=127, stdout="", stderr=str(e))
    except OSError as e:
        # Exists but cannot be executed (permissions, bad interpreter line)
        return CommandResult(returncode=126, stdout="", stderr=str(e))
    return CommandResult(returncode=result.returncode, stdout=result.stdout, stderr=result.stderr)


# =============================================================================
# PRE-FLIGHT
# =============================================================================

# Static technology -> {step identifier -> action} table. An action is either
# the name of a built-in kind below, or a mapping {commands: [...], hint: str}
# declared in the config file under `preflight:`.
DEFAULT_PREFLIGHT_TABLE: dict[str, dict] = {
    "flutter": {
        "flutter_tool_installer": "tool_installer",
        "flutter_version_alignment": "version_alignment",
        "flutter_version_validator": "version_validator",
        "flutter_test_coverage": "test_coverage",
    },
    "nestjs": {
        "nestjs_tool_installer": "tool_installer",
        "nestjs_version_alignment": "version_alignment",
        "nestjs_version_validator": "version_validator",
        "nestjs_test_coverage": "test_coverage",
    },
}

FLUTTER_MONOREPO_DIRS = ["packages", "apps"]
NESTJS_MONOREPO_DIRS = ["apps", "packages", "libs"]


@dataclass
class PreflightResult:
    """Result of running one step locally."""
    step: ExecutionStep
    success: bool
    log_lines: list[str] = field(default_factory=list)
    hint: str = ""
    duration_seconds: float = 0.0

    @property
    def message(self) -> str:
        failures = [line for line in self.log_lines if line.startswith("FAIL")]
        if failures:
            return failures[-1]
        return "pre-flight completed" if self.success else "pre-flight failed"

    @property
    def artifact_text(self) -> str:
        status = "PASS" if self.success else "FAIL"
        lines = [
            f"Step {self.step.index}: {self.step.identifier} (pre-flight)",
            f"Status: {status}",
            "",
        ]
        lines.extend(self.log_lines)
        return "\n".join(lines) + "\n"


def preflight_table(config: dict) -> dict[str, dict]:
    """Merge the config's `preflight:` table over the built-in one.

    A technology mapped to null in the config drops its built-in entries.
    """
    table = {tech: dict(steps) for tech, steps in DEFAULT_PREFLIGHT_TABLE.items()}
    configured = config.get("preflight")
    if not isinstance(configured, dict):
        return table
    for tech, steps in configured.items():
        if steps is None:
            table.pop(tech, None)
        elif isinstance(steps, dict):
            table.setdefault(tech, {}).update(steps)
        else:
            print(f"[WARNING] Ignoring malformed preflight entry for '{tech}'")
    return table


def _run_logged(cmd, cwd: Path, label: str, lines: list[str]) -> bool:
    """Run a command and append an OK/FAIL line for it."""
    result = run_local_command(cmd, cwd)
    if result.ok:
        lines.append(f"OK   {label}")
    else:
        lines.append(f"FAIL {label} (exit {result.returncode})")
        tail = result.tail()
        if tail:
            lines.append(f"     {tail}")
    return result.ok


def _monorepo_packages(cwd: Path, parents: list[str], marker: str) -> list[Path]:
    """Sub-packages under the given parent dirs that contain `marker`."""
    packages = []
    for parent in parents:
        parent_dir = cwd / parent
        if not parent_dir.is_dir():
            continue
        for entry in sorted(parent_dir.iterdir()):
            if entry.is_dir() and (entry / marker).is_file():
                packages.append(entry)
    return packages


def read_flutter_version(cwd: Path) -> Optional[str]:
    """Read the pinned Flutter version from .fvmrc or .fvm/fvm_config.json."""
    for config_file in (cwd / ".fvmrc", cwd / ".fvm" / "fvm_config.json"):
        if not config_file.is_file():
            continue
        try:
            data = json.loads(config_file.read_text())
        except (OSError, ValueError):
            continue
        if isinstance(data, dict):
            version = data.get("flutter") or data.get("flutterSdkVersion")
            if isinstance(version, str) and version:
                return version
    return None


def read_node_version(cwd: Path) -> Optional[str]:
    """Read the pinned Node.js version from .nvmrc or .node-version."""
    for version_file in (cwd / ".nvmrc", cwd / ".node-version"):
        if version_file.is_file():
            try:
                version = version_file.read_text(encoding="utf-8").strip()
            except (OSError, UnicodeDecodeError):
                continue
            if version:
                return version
    return None


def detect_package_manager(cwd: Path) -> str:
    if (cwd / "pnpm-lock.yaml").is_file():
        return "pnpm"
    if (cwd / "yarn.lock").is_file():
        return "yarn"
    return "npm"


def flutter_tool_installer(cwd: Path) -> tuple[bool, list[str], str]:
    lines: list[str] = []
    check = run_local_command(["fvm", "--version"], cwd)
    if check.ok:
        lines.append(f"OK   FVM installed ({check.stdout.strip()})")
        return True, lines, ""

    lines.append("FVM not found. Installing...")
    if _run_logged(["dart", "pub", "global", "activate", "fvm"], cwd, "dart pub global activate fvm", lines):
        return True, lines, ""
    return False, lines, "Install FVM with `dart pub global activate fvm` and add ~/.pub-cache/bin to PATH."


def flutter_version_alignment(cwd: Path) -> tuple[bool, list[str], str]:
    lines: list[str] = []
    version = read_flutter_version(cwd)
    if version is None:
        lines.append("No .fvmrc or .fvm/fvm_config.json found. Skipping version alignment.")
    else:
        lines.append(f"OK   Flutter version: {version}")
        if not _run_logged(["fvm", "install", version], cwd, f"fvm install {version}", lines):
            return False, lines, f"Run `fvm install {version}` in {cwd} and check the FVM cache."
        if not _run_logged(["fvm", "global", version], cwd, f"fvm global {version}", lines):
            return False, lines, f"Run `fvm global {version}`; FVM must be able to set the global SDK."

    if not _run_logged(["fvm", "flutter", "pub", "get"], cwd, "flutter pub get (root)", lines):
        return False, lines, "Run `fvm flutter pub get` in the project root and fix dependency resolution."
    for package in _monorepo_packages(cwd, FLUTTER_MONOREPO_DIRS, "pubspec.yaml"):
        label = f"{package.parent.name}/{package.name}"
        if not _run_logged(["fvm", "flutter", "pub", "get"], package, f"flutter pub get ({label})", lines):
            return False, lines, f"Run `fvm flutter pub get` in {package} and fix dependency resolution."

    # Code generation failures are reported but left for the analysis steps
    for directory in [cwd] + _monorepo_packages(cwd, FLUTTER_MONOREPO_DIRS, "pubspec.yaml"):
        pubspec = directory / "pubspec.yaml"
        try:
            uses_codegen = pubspec.is_file() and "build_runner" in pubspec.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            lines.append(f"WARN cannot read {pubspec}: {e}")
            continue
        if not uses_codegen:
            continue
        name = "root" if directory == cwd else directory.name
        _run_logged(
            ["fvm", "dart", "run", "build_runner", "build", "--delete-conflicting-outputs"],
            directory, f"build_runner ({name})", lines,
        )
    return True, lines, ""


def flutter_version_validator(cwd: Path) -> tuple[bool, list[str], str]:
    lines: list[str] = []
    version = read_flutter_version(cwd)
    if version is None:
        lines.append("No pinned Flutter version. Nothing to validate.")
        return True, lines, ""
    result = run_local_command(["fvm", "flutter", "--version"], cwd)
    if result.ok and version in result.stdout:
        lines.append(f"OK   fvm flutter --version reports {version}")
        return True, lines, ""
    lines.append(f"FAIL fvm flutter --version does not report {version}")
    return False, lines, f"Pin the SDK with `fvm use {version}` in {cwd}."


def flutter_test_coverage(cwd: Path) -> tuple[bool, list[str], str]:
    lines: list[str] = []
    if not _run_logged(["fvm", "flutter", "test", "--coverage"], cwd, "flutter test --coverage", lines):
        return False, lines, "Fix failing tests or run `fvm flutter test --coverage` manually."
    lcov = cwd / "coverage" / "lcov.info"
    lines.append(f"Coverage file: {lcov}" if lcov.is_file() else "No coverage/lcov.info produced.")
    return True, lines, ""


def nestjs_tool_installer(cwd: Path) -> tuple[bool, list[str], str]:
    lines: list[str] = []
    result = run_local_command(["node", "--version"], cwd)
    if result.ok:
        lines.append(f"OK   Node.js {result.stdout.strip()}")
        return True, lines, ""
    lines.append("FAIL Node.js not found")
    return False, lines, "Install Node.js (https://nodejs.org) or through nvm, then re-run."


def nestjs_version_alignment(cwd: Path) -> tuple[bool, list[str], str]:
    lines: list[str] = []
    version = read_node_version(cwd)
    if version is not None:
        lines.append(f"OK   Node version: {version}")
        # nvm is a shell function, so it has to be sourced first
        nvm_use = (
            'export NVM_DIR="$HOME/.nvm" && '
            '[ -s "$NVM_DIR/nvm.sh" ] && . "$NVM_DIR/nvm.sh" && '
            f"nvm use {version}"
        )
        if not _run_logged(["bash", "-c", nvm_use], cwd, f"nvm use {version}", lines):
            return False, lines, f"Install the pinned version with `nvm install {version}`."

    pm = detect_package_manager(cwd)
    if not _run_logged([pm, "install"], cwd, f"{pm} install (root)", lines):
        return False, lines, f"Run `{pm} install` in the project root and fix the install errors."
    for package in _monorepo_packages(cwd, NESTJS_MONOREPO_DIRS, "package.json"):
        label = f"{package.parent.name}/{package.name}"
        if not _run_logged([pm, "install"], package, f"{pm} install ({label})", lines):
            return False, lines, f"Run `{pm} install` in {package} and fix the install errors."
    return True, lines, ""


def nestjs_version_validator(cwd: Path) -> tuple[bool, list[str], str]:
    lines: list[str] = []
    version = read_node_version(cwd)
    if version is None:
        lines.append("No pinned Node.js version. Nothing to validate.")
        return True, lines, ""
    result = run_local_command(["node", "--version"], cwd)
    actual = result.stdout.strip().lstrip("v")
    if result.ok and actual.startswith(version.lstrip("v")):
        lines.append(f"OK   node --version reports {actual}")
        return True, lines, ""
    lines.append(f"FAIL node --version reports '{actual or 'nothing'}', expected {version}")
    return False, lines, f"Switch Node.js with `nvm use {version}` before running the audit."


def nestjs_test_coverage(cwd: Path) -> tuple[bool, list[str], str]:
    lines: list[str] = []
    try:
        package = json.loads((cwd / "package.json").read_text())
    except (OSError, ValueError):
        package = {}
    scripts = package.get("scripts", {}) if isinstance(package, dict) else {}
    if not isinstance(scripts, dict) or "test:cov" not in scripts:
        lines.append("No test:cov script in package.json. Skipping coverage.")
        return True, lines, ""
    pm = detect_package_manager(cwd)
    if not _run_logged([pm, "run", "test:cov"], cwd, f"{pm} run test:cov", lines):
        return False, lines, f"Fix failing tests or run `{pm} run test:cov` manually."
    return True, lines, ""


BUILTIN_PREFLIGHT_ACTIONS: dict[tuple[str, str], Callable[[Path], tuple[bool, list[str], str]]] = {
    ("flutter", "tool_installer"): flutter_tool_installer,
    ("flutter", "version_alignment"): flutter_version_alignment,
    ("flutter", "version_validator"): flutter_version_validator,
    ("flutter", "test_coverage"): flutter_test_coverage,
    ("nestjs", "tool_installer"): nestjs_tool_installer,
    ("nestjs", "version_alignment"): nestjs_version_alignment,
    ("nestjs", "version_validator"): nestjs_version_validator,
    ("nestjs", "test_coverage"): nestjs_test_coverage,
}


def run_configured_action(action: dict, cwd: Path) -> tuple[bool, list[str], str]:
    """Run the shell commands of a config-declared pre-flight action in order."""
    lines: list[str] = []
    hint = str(action.get("hint", ""))
    commands = action.get("commands", [])
    if isinstance(commands, str):
        commands = [commands]
    for command in commands:
        label = command if isinstance(command, str) else " ".join(str(part) for part in command)
        if not _run_logged(command, cwd, label, lines):
            return False, lines, hint or f"Run `{label}` in {cwd} and fix the reported error."
    return True, lines, ""


def partition_steps(
    steps, tech_prefix: str, table: dict[str, dict], enabled: bool = True
) -> tuple[list[ExecutionStep], list[ExecutionStep]]:
    """Split steps into (pre-flight, delegated), keeping plan order.

    Steps without an entry for the technology are always delegated. With
    `enabled=False` every step goes to the agent.
    """
    if not enabled:
        return [], list(steps)
    actions = table.get(tech_prefix, {})
    preflight = [step for step in steps if step.identifier in actions]
    delegated = [step for step in steps if step.identifier not in actions]
    return preflight, delegated


class PreflightRunner:
    """Runs the deterministic steps of a plan locally, without the agent."""

    def __init__(self, tech_prefix: str, project_dir: Path, table: Optional[dict[str, dict]] = None) -> None:
        self.tech_prefix = tech_prefix
        self.project_dir = Path(project_dir)
        self.table = table if table is not None else preflight_table({})

    @property
    def actions(self) -> dict:
        return self.table.get(self.tech_prefix, {})

    def is_preflight(self, step: ExecutionStep) -> bool:
        return step.identifier in self.actions

    def partition(
        self, steps, enabled: bool = True
    ) -> tuple[list[ExecutionStep], list[ExecutionStep]]:
        return partition_steps(steps, self.tech_prefix, self.table, enabled)

    def describe(self, step: ExecutionStep) -> str:
        action = self.actions.get(step.identifier)
        if isinstance(action, dict):
            return "configured commands"
        return str(action)

    def run_step(self, step: ExecutionStep) -> PreflightResult:
        start = time.monotonic()
        action = self.actions.get(step.identifier)
        try:
            if isinstance(action, dict):
                success, lines, hint = run_configured_action(action, self.project_dir)
            else:
                handler = BUILTIN_PREFLIGHT_ACTIONS.get((self.tech_prefix, str(action)))
                if handler is None:
                    success, lines, hint = (
                        False,
                        [f"FAIL unknown pre-flight action '{action}' for {self.tech_prefix}"],
                        f"Fix the '{self.tech_prefix}' entry of the preflight table in {DEFAULT_CONFIG_PATH}.",
                    )
                else:
                    success, lines, hint = handler(self.project_dir)
        except Exception as e:
            success, lines, hint = (
                False,
                [f"FAIL {step.identifier} crashed: {type(e).__name__}: {e}"],
                f"Run the '{step.identifier}' checks by hand in {self.project_dir} and fix the reported error.",
            )
        return PreflightResult(
            step=step,
            success=success,
            log_lines=lines,
            hint=hint,
            duration_seconds=time.monotonic() - start,
        )


# =============================================================================
# AGENT PROCESS
# =============================================================================

@dataclass
class ProcessOutput:
    """Exit status and full output of one agent invocation."""
    returncode: int
    stdout: str
    stderr: str


class OutputCollector:
    """Collects output from an agent CLI and tracks stats."""

    def __init__(self):
        self.lines: list[str] = []
        self.bytes_received = 0
        self.line_count = 0

    def add_line(self, line: str) -> None:
        self.lines.append(line)
        self.bytes_received += len(line.encode('utf-8'))
        self.line_count += 1

    def get_output(self) -> str:
        return ''.join(self.lines)


def stream_output(pipe, prefix: str, collector: OutputCollector, show_full: bool) -> None:
    """Stream output from a subprocess pipe line by line."""
    for line in iter(pipe.readline, ''):
        if line:
            collector.add_line(line)
            if show_full:
                print(f"[AGENT {prefix}] {line.rstrip()}", flush=True)


def resolve_agent_binary(descriptor: AgentDescriptor) -> list[str]:
    """Find an agent binary, checking PATH then known install locations.

    Returns a command list (e.g. ['claude'] or ['node', '/path/to/cli.js']).
    """
    binary_path = shutil.which(descriptor.binary)
    if binary_path:
        return [binary_path]

    if descriptor.kind is AgentKind.CLAUDE:
        for search_path in CLAUDE_BINARY_SEARCH_PATHS:
            if os.path.isfile(search_path):
                node_path = shutil.which("node")
                if node_path:
                    return [node_path, search_path]

    # Fallback - will fail at runtime with a clear error
    return [descriptor.binary]


def build_agent_command(
    agent: AgentKind, model: Optional[str], prompt: str, binary: Optional[list[str]] = None
) -> tuple[list[str], Optional[str]]:
    """Build the CLI invocation for a step.

    Returns (command, stdin_text). Claude and Gemini read the prompt from
    stdin so large artifact context never hits argument length limits;
    Cursor takes it as the trailing argument.
    """
    binary = binary or [AGENT_DESCRIPTORS[agent].binary]
    model_args = ["--model", model] if model else []
    if agent is AgentKind.CLAUDE:
        cmd = [*binary, "-p", "--output-format", "json", "--allowedTools", CLAUDE_ALLOWED_TOOLS, *model_args]
        return cmd, prompt
    if agent is AgentKind.CURSOR:
        cmd = [*binary, "--print", "--output-format", "json", "--force", *model_args, prompt]
        return cmd, None
    cmd = [*binary, "--yolo", "-o", "json", *model_args]
    return cmd, prompt


def run_agent_process(cmd: list[str], stdin_text: Optional[str], cwd: Path) -> ProcessOutput:
    """Run an agent CLI to completion and capture all of its output.

    Blocks until the process exits, with no timeout. An
    operator interrupt terminates the child before propagating.
    """
    process = subprocess.Popen(
        cmd,
        stdin=subprocess.PIPE if stdin_text is not None else subprocess.DEVNULL,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        text=True,
        encoding="utf-8",
        errors="replace",
        cwd=str(cwd),
        env=build_child_env(),
    )

    stdout_collector = OutputCollector()
    stderr_collector = OutputCollector()
    stdout_thread = threading.Thread(
        target=stream_output, args=(process.stdout, "OUT", stdout_collector, VERBOSE)
    )
    stderr_thread = threading.Thread(
        target=stream_output, args=(process.stderr, "ERR", stderr_collector, VERBOSE)
    )
    stdout_thread.start()
    stderr_thread.start()

    try:
        if stdin_text is not None:
            try:
                process.stdin.write(stdin_text)
                process.stdin.close()
            except BrokenPipeError:
                # The child exited before reading its prompt; its exit status says why
                verbose_log("Agent closed stdin before reading the prompt", "EXEC")

        if not VERBOSE:
            print("  [Agent] Working", end="", flush=True)
        last_bytes = 0
        while True:
            try:
                returncode = process.wait(timeout=1)
                break
            except subprocess.TimeoutExpired:
                if VERBOSE:
                    continue
                current_bytes = stdout_collector.bytes_received + stderr_collector.bytes_received
                if current_bytes > last_bytes:
                    # Show a dot for each 1KB received
                    print("." * max(1, min((current_bytes - last_bytes) // 1024, 5)), end="", flush=True)
                    last_bytes = current_bytes
    except KeyboardInterrupt:
        print(" [INTERRUPTED]", flush=True)
        process.terminate()
        try:
            process.wait(timeout=5)
        except subprocess.TimeoutExpired:
            process.kill()
            process.wait()
        raise
    finally:
        stdout_thread.join(timeout=5)
        stderr_thread.join(timeout=5)

    if not VERBOSE:
        print(f" done ({stdout_collector.line_count} lines, {stdout_collector.bytes_received:,} bytes)", flush=True)
    verbose_log(f"Process completed with return code: {returncode}", "EXEC")
    return ProcessOutput(
        returncode=returncode,
        stdout=stdout_collector.get_output(),
        stderr=stderr_collector.get_output(),
    )


def describe_process_error(output: ProcessOutput, agent: AgentKind, model: Optional[str]) -> str:
    """Turn a failed agent invocation into a targeted message.

    Looks for known patterns (model not found, capacity exhausted,
    authentication) before falling back to the exit code.
    """
    combined = f"{output.stderr} {output.stdout}".lower()
    display_name = AGENT_DESCRIPTORS[agent].display_name

    if "not_found" in combined or "model not found" in combined or "requested entity was not found" in combined:
        return (f'Model "{model}" not found. '
                f"Verify the model name is correct or try a different model.")
    if any(marker in combined for marker in ("capacity", "resource_exhausted", "rate_limit", "429")):
        return (f'No capacity available for model "{model}". '
                f"You may not have an active subscription or sufficient quota "
                f"for this model. Try a different model.")
    if any(marker in combined for marker in ("unauthenticated", "permission_denied", "401", "403")):
        return f"Authentication failed. Verify you are logged in to the {display_name} CLI."
    return f"{display_name} CLI exited with code {output.returncode}"


# =============================================================================
# STEP EXECUTION
# =============================================================================

@dataclass
class StepResult:
    """Result of delegating one step to the agent."""
    step: ExecutionStep
    success: bool
    findings: str
    raw_output: str
    duration_seconds: float
    usage: UsageRecord
    error_message: Optional[str] = None
    stderr: str = ""
    returncode: Optional[int] = None


def load_rule_content(rule_path: Path) -> str:
    """Read a rule file. YAML rules contribute their `prompt` field when present."""
    text = rule_path.read_text(encoding="utf-8")
    if rule_path.suffix not in YAML_PLAN_SUFFIXES:
        return text
    try:
        rule = yaml.safe_load(text)
    except yaml.YAMLError as e:
        verbose_log(f"Rule {rule_path} is not valid YAML, sending it verbatim: {e}", "RULE")
        return text
    if isinstance(rule, dict) and isinstance(rule.get("prompt"), str):
        return rule["prompt"]
    return text


def format_prior_artifacts(prior_artifacts: dict[str, str]) -> str:
    if not prior_artifacts:
        return "None yet. This is the first analysis step.\n"
    sections = []
    for identifier, content in prior_artifacts.items():
        body = content.strip() or "(no findings: this step failed)"
        sections.append(f"=== ARTIFACT: {identifier} ===\n{body}\n=== END ARTIFACT ===")
    return "\n\n".join(sections) + "\n"


def format_artifact_references(prior_artifacts: dict[str, str], artifacts_dir: Path) -> str:
    """List prior artifacts by path, for agents that must read them from disk."""
    if not prior_artifacts:
        return "None yet. This is the first analysis step.\n"
    lines = ["Read each of these files before you start:"]
    for identifier, content in prior_artifacts.items():
        path = Path(artifacts_dir) / f"{identifier}{ARTIFACT_EXTENSION}"
        note = "" if content.strip() else " (empty: this step failed)"
        lines.append(f"- {identifier}: {path}{note}")
    return "\n".join(lines) + "\n"


class StepExecutor:
    """Executes plan steps by invoking the agent CLI in a fresh process.

    Each step gets its own process, and so a fresh context window. The
    prompt carries the rule and every artifact written so far; the agent's
    answer becomes the step's artifact.

    Cursor receives its prompt as a command-line argument, which the OS
    caps in size. For Cursor the rule, template and artifacts are passed
    as file paths for the agent to read instead of being inlined.
    """

    def __init__(self, config: RunConfig, usage_tracker: Optional[RunUsageTracker] = None) -> None:
        self.config = config
        self.usage_tracker = usage_tracker or RunUsageTracker()
        self.binary = resolve_agent_binary(config.descriptor)

    @property
    def inline_context(self) -> bool:
        return self.config.agent is not AgentKind.CURSOR

    def rule_file_path(self, step: ExecutionStep) -> Path:
        return self.config.rule_base_path / f"{step.identifier}{self.config.descriptor.rule_extension}"

    def build_prompt(self, step: ExecutionStep, rule_content: str, prior_artifacts: dict[str, str]) -> str:
        config = self.config
        if self.inline_context:
            rule = rule_content.strip()
            previous = format_prior_artifacts(prior_artifacts)
        else:
            rule = f"Read the rule file {self.rule_file_path(step)} and follow it."
            previous = format_artifact_references(prior_artifacts, config.artifacts_dir)

        if step.is_report_step:
            if not config.template_path.is_file():
                template = f"(No report template found at {config.template_path}; use a clear plain-text layout.)"
            elif self.inline_context:
                template = config.template_path.read_text(encoding="utf-8")
            else:
                template = f"Read the template file {config.template_path} and follow its layout."
            return (
                f"You are generating the final audit report for the {config.display_name}.\n"
                f"Project directory: {config.project_dir}\n\n"
                f"Follow ALL report generation instructions in this rule:\n"
                f"=== RULE: {step.identifier} ===\n{rule}\n=== END RULE ===\n\n"
                f"Report format template:\n"
                f"=== TEMPLATE ===\n{template.strip()}\n=== END TEMPLATE ===\n\n"
                f"Findings from all previous analysis steps:\n\n"
                f"{previous}\n"
                f"Print the complete report as your final answer, in plain text "
                f"suitable for Google Docs. Do not write any files; the runner saves your answer."
            )
        return (
            f"You are executing step {step.index} of {len(config.steps)} "
            f"in the {config.display_name}.\n"
            f"Project directory: {config.project_dir}\n\n"
            f"Follow ALL instructions in this rule:\n"
            f"=== RULE: {step.identifier} ===\n{rule}\n=== END RULE ===\n\n"
            f"Findings from previous steps:\n\n"
            f"{previous}\n"
            f"Print your complete findings as your final answer. Include: status, "
            f"key findings, evidence (file paths and line numbers), and any scores. "
            f"Do not write any files; the runner saves your answer."
        )

    def _failure(self, step: ExecutionStep, start: float, message: str) -> StepResult:
        elapsed = time.monotonic() - start
        return StepResult(
            step=step,
            success=False,
            findings="",
            raw_output="",
            duration_seconds=elapsed,
            usage=UsageRecord(step_index=step.index, step_id=step.identifier, elapsed_seconds=elapsed),
            error_message=message,
        )

    def run(self, step: ExecutionStep, prior_artifacts: dict[str, str]) -> StepResult:
        """Run one step through the agent and return its findings.

        Failures are returned, not raised: whether they abort the run depends
        on the step's mandatory flag, which is the controller's call. No
        retries are attempted.
        """
        start = time.monotonic()
        rule_path = self.rule_file_path(step)
        if not rule_path.is_file():
            return self._failure(step, start, f"Rule file not found: {rule_path}")
        try:
            rule_content = load_rule_content(rule_path)
        except (OSError, UnicodeDecodeError) as e:
            return self._failure(step, start, f"Cannot read rule file {rule_path}: {e}")

        try:
            prompt = self.build_prompt(step, rule_content, prior_artifacts)
        except (OSError, UnicodeDecodeError) as e:
            return self._failure(step, start, f"Cannot read report template {self.config.template_path}: {e}")
        cmd, stdin_text = build_agent_command(self.config.agent, self.config.model, prompt, self.binary)
        verbose_log(f"Command: {' '.join(cmd[:len(self.binary) + 1])} ... (prompt {len(prompt)} chars)", "EXEC")
        verbose_log(f"Model: {self.config.model or 'backend default'}", "EXEC")

        try:
            output = run_agent_process(cmd, stdin_text, self.config.project_dir)
        except OSError as e:
            return self._failure(step, start, f"Could not start {' '.join(self.binary)}: {e}")

        elapsed = time.monotonic() - start
        usage = replace(
            self.usage_tracker.extract(output.stdout, self.config.agent),
            step_index=step.index,
            step_id=step.identifier,
            elapsed_seconds=elapsed,
        )
        findings = output_parser_for(self.config.agent).extract_findings(output.stdout)

        error_message = None
        if output.returncode != 0:
            error_message = describe_process_error(output, self.config.agent, self.config.model)
        elif not findings:
            error_message = "Agent produced no findings (empty output)"

        return StepResult(
            step=step,
            success=error_message is None,
            findings=findings,
            raw_output=output.stdout,
            duration_seconds=elapsed,
            usage=usage,
            error_message=error_message,
            stderr=output.stderr,
            returncode=output.returncode,
        )


def format_step_log(result: StepResult, total_steps: int) -> str:
    """Render the per-step log file saved next to the artifacts."""
    usage = result.usage
    lines = [
        "=== Audit Step Output ===",
        f"Step: {result.step.index}/{total_steps} {result.step.identifier}",
        f"Timestamp: {datetime.now().isoformat()}",
        f"Duration: {result.duration_seconds:.1f}s",
        f"Return code: {result.returncode if result.returncode is not None else 'not started'}",
        f"Tokens: {format_tokens(usage.total_input_tokens)} input / {format_tokens(usage.output_tokens)} output",
    ]
    if usage.cost_usd is not None:
        lines.append(f"Cost: ${usage.cost_usd:.4f}")
    if result.error_message:
        lines.append(f"Error: {result.error_message}")
    lines.append("")
    lines.append(LOG_STDOUT_SECTION)
    lines.append(result.raw_output)
    lines.append(LOG_STDERR_SECTION)
    lines.append(result.stderr)
    return "\n".join(lines)


# =============================================================================
# RUN CONTROLLER
# =============================================================================

class RunState(Enum):
    IDLE = "idle"
    PREFLIGHTING = "preflighting"
    DELEGATING = "delegating"
    FINALIZING = "finalizing"
    COMPLETED = "completed"
    ABORTED = "aborted"


class RunController:
    """Sequences one audit run and applies the mandatory-abort policy.

    IDLE -> PREFLIGHTING -> DELEGATING -> FINALIZING -> COMPLETED, with any
    fatal condition jumping to ABORTED. Steps run one at a time because
    each step reads the artifacts of all earlier ones.
    """

    def __init__(
        self,
        config: RunConfig,
        artifacts: Optional[ArtifactManager] = None,
        preflight: Optional[PreflightRunner] = None,
        executor: Optional[StepExecutor] = None,
        usage_tracker: Optional[RunUsageTracker] = None,
    ) -> None:
        self.config = config
        self.usage_tracker = usage_tracker or RunUsageTracker()
        self.artifacts = artifacts or ArtifactManager(config.artifacts_dir, config.report_path)
        self.preflight = preflight or PreflightRunner(config.tech_prefix, config.project_dir)
        self.executor = executor or StepExecutor(config, self.usage_tracker)
        self.state = RunState.IDLE
        self.current_step: Optional[ExecutionStep] = None
        self.completed_steps: list[str] = []
        self.failed_steps: list[str] = []
        self.abort_reason: Optional[str] = None
        self.summary: Optional[RunSummary] = None

    def _transition(self, state: RunState) -> None:
        verbose_log(f"{self.state.name} -> {state.name}", "STATE")
        self.state = state

    def _step_label(self, step: ExecutionStep) -> str:
        mandatory = " [MANDATORY]" if step.mandatory else ""
        return f"Step {step.index}/{len(self.config.steps)}: {step.identifier}{mandatory}"

    def run(self) -> RunSummary:
        """Execute the whole plan and return the (possibly partial) summary."""
        start = time.monotonic()
        try:
            removed = self.artifacts.reset()
            if removed:
                print(f"[Cleaned {removed} previous artifact(s)]")

            preflight_steps, delegated_steps = self.preflight.partition(
                self.config.steps, self.config.preflight_enabled
            )
            self._transition(RunState.PREFLIGHTING)
            if preflight_steps:
                print("\nPre-flight checks")
                print("-" * 17)
            for step in preflight_steps:
                self.current_step = step
                self._run_preflight_step(step)

            self._transition(RunState.DELEGATING)
            report_content = None
            for step in delegated_steps:
                self.current_step = step
                findings = self._run_delegated_step(step)
                if step.is_report_step and findings:
                    report_content = findings
            self.current_step = None

            self._transition(RunState.FINALIZING)
            if report_content is not None:
                path = self.artifacts.write_report(report_content)
                print(f"\nReport saved to: {path}")
            self._transition(RunState.COMPLETED)
        except AuditRunError as e:
            self._abort(e)
        except KeyboardInterrupt:
            self._abort(AuditRunError("Interrupted by operator"))
        except Exception as e:
            self._abort(AuditRunError(f"Unexpected {type(e).__name__}: {e}"))

        return self._finish(time.monotonic() - start)

    def _run_preflight_step(self, step: ExecutionStep) -> None:
        print(f"[PREFLIGHT] {self._step_label(step)} ({self.preflight.describe(step)})", flush=True)
        result = self.preflight.run_step(step)
        for line in result.log_lines:
            print(f"  {line}")
        self.usage_tracker.record(UsageRecord(
            step_index=step.index,
            step_id=step.identifier,
            elapsed_seconds=result.duration_seconds,
            preflight=True,
        ))

        if result.success:
            self.artifacts.write(step.identifier, result.artifact_text)
            self.completed_steps.append(step.identifier)
            print(f"[PREFLIGHT] {step.identifier}: OK ({format_duration(result.duration_seconds)})")
            return

        if step.mandatory:
            raise PreflightFailure(step, f"Pre-flight failed: {result.message}", hint=result.hint)

        self.failed_steps.append(step.identifier)
        self.artifacts.write(step.identifier, "")
        print(f"[WARNING] Pre-flight step {step.identifier} failed (continuing): {result.message}")
        if result.hint:
            print(f"[WARNING] Resolution: {result.hint}")

    def _run_delegated_step(self, step: ExecutionStep) -> Optional[str]:
        prior_artifacts = self.artifacts.read_all()
        print(f"[STEP] {self._step_label(step)}", flush=True)
        result = self.executor.run(step, prior_artifacts)
        if result.returncode is not None:
            log_path = self.artifacts.write_log(step, format_step_log(result, len(self.config.steps)))
            verbose_log(f"Log saved to: {log_path}", "EXEC")
        self.usage_tracker.record(result.usage)
        print(RunUsageTracker.format_step_line(result.usage))

        if result.success:
            self.artifacts.write(step.identifier, result.findings)
            self.completed_steps.append(step.identifier)
            return result.findings

        if step.mandatory:
            raise StepInvocationFailure(step, result.error_message or "Step failed", stderr=result.stderr)

        self.failed_steps.append(step.identifier)
        self.artifacts.write(step.identifier, "")
        print(f"[WARNING] {step.identifier} FAILED (continuing): {result.error_message}")
        return None

    def _abort(self, error: AuditRunError) -> None:
        self._transition(RunState.ABORTED)
        self.abort_reason = str(error)
        step = getattr(error, "step", None) or self.current_step
        where = f"step {step.index} ({step.identifier})" if step else "setup"
        print(f"\n[ABORT] Audit aborted at {where}: {error}")
        if isinstance(error, PreflightFailure) and error.hint:
            print(f"[ABORT] Resolution: {error.hint}")
        if isinstance(error, StepInvocationFailure) and error.stderr.strip():
            print("[ABORT] Agent error output:")
            print(error.stderr.strip()[-ERROR_TAIL_LENGTH:])
        print(f"[ABORT] Artifacts produced so far are kept in: {self.config.artifacts_dir}")

    def _finish(self, wall_time: float) -> RunSummary:
        self.summary = self.usage_tracker.summarize(self.state.value, len(self.failed_steps), wall_time)
        print(self.usage_tracker.format_final_summary(self.summary))

        total = len(self.config.steps)
        succeeded = len(self.completed_steps)
        if self.state is RunState.ABORTED:
            print(f"Audit ABORTED. {succeeded}/{total} steps completed.")
        elif self.failed_steps:
            print(f"Audit completed with warnings. {succeeded}/{total} steps succeeded, "
                  f"{len(self.failed_steps)} failed: {', '.join(self.failed_steps)}")
        else:
            print(f"Audit completed successfully! {succeeded}/{total} steps in "
                  f"{format_duration(wall_time)}.")

        try:
            report_path = self.usage_tracker.write_report(
                self.summary, self.config, self.artifacts.usage_report_path
            )
            print(f"[Usage report written to: {report_path}]")
        except ArtifactIOError as e:
            print(f"[WARNING] {e}")
        return self.summary


# =============================================================================
# PROJECT VALIDATION
# =============================================================================

# Technology prefix -> file that marks a project of that kind
PROJECT_MARKERS = {
    "flutter": "pubspec.yaml",
    "dart": "pubspec.yaml",
    "nestjs": "package.json",
    "nextjs": "package.json",
    "react": "package.json",
    "angular": "package.json",
    "vue": "package.json",
    "node": "package.json",
    "go": "go.mod",
    "rust": "Cargo.toml",
    "python": "pyproject.toml",
    "ruby": "Gemfile",
    "swift": "Package.swift",
    "kotlin": "build.gradle.kts",
    "java": "pom.xml",
}


def validate_project(tech_prefix: str, cwd: Path) -> Optional[str]:
    """Check the working directory looks like a project of the given technology.

    Returns None on success, or an error message. Unknown technologies are
    not validated.
    """
    marker = PROJECT_MARKERS.get(tech_prefix)
    if marker is None:
        return None
    marker_path = Path(cwd) / marker
    if not marker_path.is_file():
        return (f"No {marker} found in current directory.\n"
                f"Please run this command from a {tech_prefix} project root.")
    if tech_prefix != "nestjs":
        return None
    try:
        manifest = marker_path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        return f"Cannot read {marker_path}: {e}"
    if "@nestjs/core" not in manifest:
        return ("package.json does not contain @nestjs/core dependency.\n"
                "This does not appear to be a NestJS project.")
    return None


# =============================================================================
# ENTRY POINT
# =============================================================================

def print_dry_run(config: RunConfig, runner: PreflightRunner) -> None:
    """Show what each step would do without running anything."""
    preflight_steps, _ = runner.partition(config.steps, config.preflight_enabled)
    executor = StepExecutor(config)
    for step in config.steps:
        label = f"Step {step.index}/{len(config.steps)}: {step.identifier}"
        if step in preflight_steps:
            print(f"[DRY RUN] {label} -> pre-flight ({runner.describe(step)})")
            continue
        rule_path = executor.rule_file_path(step)
        try:
            prompt = executor.build_prompt(step, f"<contents of {rule_path}>", {})
        except (OSError, UnicodeDecodeError) as e:
            prompt = f"<report template {config.template_path} unreadable: {e}>"
        cmd, stdin_text = build_agent_command(config.agent, config.model, prompt, executor.binary)
        if stdin_text is None:
            shown = cmd[:-1] + ["<prompt>"]
        else:
            shown = cmd + ["< <prompt>"]
        print(f"[DRY RUN] {label} -> {' '.join(shown)}")
        print(f"          rule: {rule_path}")
        print(f"          prompt: {prompt[:DRY_RUN_PROMPT_PREVIEW_LENGTH]}...")
    print(f"[DRY RUN] Artifacts would be written to: {config.artifacts_dir}")
    print(f"[DRY RUN] Report would be written to: {config.report_path}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Execute a project audit plan step-by-step with an AI CLI"
    )
    parser.add_argument("--plan", required=True, help="Path to the plan file (markdown or YAML)")
    parser.add_argument("--tech", required=True, help="Technology prefix, e.g. 'flutter' or 'nestjs'")
    parser.add_argument("--bundle", help="Skill bundle name (default: <tech>-audit)")
    parser.add_argument("--display-name", help="Human-readable audit name used in prompts")
    parser.add_argument("--rules", help="Directory holding one rule file per step (default: agent install location)")
    parser.add_argument("--template", help="Report template path (default: agent install location)")
    parser.add_argument(
        "--agent", "-a",
        choices=[kind.value for kind in AgentKind],
        help="AI CLI to use (auto-detected if not specified)",
    )
    parser.add_argument("--model", "-m", help="Model to use (skips interactive selection)")
    parser.add_argument("--artifacts-dir", help="Artifact directory (default: reports/.artifacts)")
    parser.add_argument("--report", help="Final report path (default: reports/<tech>_audit.txt)")
    parser.add_argument("--config", help=f"Runner config file (default: {DEFAULT_CONFIG_PATH})")
    parser.add_argument(
        "--no-preflight",
        action="store_true",
        help="Send every step to the agent, including version setup, installs and coverage",
    )
    parser.add_argument("--skip-validation", action="store_true", help="Skip project type validation")
    parser.add_argument("--dry-run", action="store_true", help="Print what would be executed without running")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable verbose output with detailed tracing")
    return parser


def main(argv: Optional[list[str]] = None) -> int:
    global VERBOSE
    args = build_parser().parse_args(argv)
    VERBOSE = args.verbose

    project_dir = Path.cwd()
    config_path = args.config or str(project_dir / DEFAULT_CONFIG_PATH)
    runner_config = load_runner_config(config_path)
    verbose_log(f"Runner config from {config_path}: {json.dumps(runner_config, default=str)}", "INIT")

    if not os.path.exists(args.plan):
        print(f"Error: Plan file not found: {args.plan}")
        return EXIT_USAGE
    try:
        steps = load_plan(args.plan)
    except PlanParseError as e:
        print(f"Error: {e}")
        return EXIT_USAGE

    tech = args.tech
    if not args.skip_validation:
        error = validate_project(tech, project_dir)
        if error:
            print(f"Error: {error}")
            return EXIT_USAGE

    descriptors = agent_descriptors(runner_config)
    explicit_agent = AgentKind(args.agent) if args.agent else None
    detected_agents = detect_agents(agent_preference(runner_config)) if explicit_agent is None else []
    try:
        agent, model = resolve_agent(explicit_agent, args.model, detected_agents, descriptors=descriptors)
    except NoAgentAvailableError as e:
        print(f"Error: {e}")
        return EXIT_USAGE

    bundle_name = args.bundle or f"{tech}-audit"
    plan_subdir = plan_subdir_from_path(args.plan)
    reports_dir = project_dir / runner_config.get("reports_dir", DEFAULT_REPORTS_DIR)
    artifacts_dir = Path(
        args.artifacts_dir or runner_config.get("artifacts_dir") or reports_dir / ARTIFACTS_SUBDIR
    )
    rules_dir = Path(args.rules) if args.rules else rule_base_path(agent, bundle_name, plan_subdir)
    template = Path(args.template) if args.template else template_path(
        agent, bundle_name, plan_subdir, REPORT_TEMPLATE_FILE.format(tech=tech)
    )

    config = RunConfig(
        bundle_id=bundle_name.replace("-", "_"),
        bundle_name=bundle_name,
        display_name=args.display_name or f"{tech.capitalize()} Project Health Audit",
        tech_prefix=tech,
        agent=agent,
        model=model,
        steps=tuple(steps),
        rule_base_path=rules_dir.resolve(),
        template_path=template.resolve(),
        artifacts_dir=artifacts_dir.resolve(),
        report_path=Path(args.report or reports_dir / REPORT_FILE_TEMPLATE.format(tech=tech)).resolve(),
        project_dir=project_dir,
        preflight_enabled=not args.no_preflight,
    )

    preflight = PreflightRunner(tech, project_dir, preflight_table(runner_config))
    preflight_steps, delegated_steps = preflight.partition(config.steps, config.preflight_enabled)
    if delegated_steps and not args.dry_run:
        error = verify_rule_installation(agent, config.rule_base_path, [s.identifier for s in delegated_steps])
        if error:
            print(f"Error: {error}")
            return EXIT_USAGE

    descriptor = descriptors[agent]
    print(f"=== Audit Runner (PID {os.getpid()}) ===")
    print(f"Audit: {config.display_name}")
    print(f"Agent: {descriptor.display_name} ({model or 'default model'})")
    print(f"Steps: {len(steps)} ({len(preflight_steps)} pre-flight, {len(delegated_steps)} AI)")
    print(f"Rules: {config.rule_base_path}")
    print(f"Artifacts: {config.artifacts_dir}")
    print(f"Report: {config.report_path}")
    print(f"Dry run: {args.dry_run}")
    print()

    if args.dry_run:
        print_dry_run(config, preflight)
        return EXIT_COMPLETED

    controller = RunController(config, preflight=preflight)
    summary = controller.run()
    return EXIT_COMPLETED if summary.state == RunState.COMPLETED.value else EXIT_ABORTED


if __name__ == "__main__":
    sys.exit(main())
