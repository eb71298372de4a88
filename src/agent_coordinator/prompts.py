"""Prompt builders for each planning stage and for per-file code analysis.

Builders are pure: structured context in, prompt string out. Each prompt
has a stable id so experiences can attribute outcomes to a template.
"""

from __future__ import annotations

import json
from typing import Any

PROMPT_IDS = {
    "request_understanding": "request_understanding.v1",
    "strategic_plan": "strategic_plan.v1",
    "subtask_breakdown_list": "subtask_breakdown.v1",
    "code_analysis": "code_analysis.v1",
}

JSON_OUTPUT_INSTRUCTION = (
    "Respond with a single valid JSON value that follows the schema above. "
    "Do not wrap it in markdown fences and do not add commentary."
)

_UNDERSTANDING_SCHEMA = """
Schema for your JSON response:
{
  "original_request": "The user's request, verbatim.",
  "parsed_intent": "Concise statement of the primary goal.",
  "project_type": "e.g. WebApp, PythonScript, CodeModification, Undetermined.",
  "key_entities_and_requirements": [
    {
      "entity_type": "technology_stack | primary_feature | constraint",
      "value": "...",
      "confidence": "High/Medium/Low"
    }
  ],
  "initial_complexity_assessment": "Low | Medium | High | Very High | Requires_More_Info",
  "potential_ambiguities": ["..."],
  "inferred_goal_summary": "What the user ultimately wants.",
  "source_code_analysis_needed": false
}
"""

_PLAN_SCHEMA = """
Schema for your JSON response:
{
  "project_title": "Concise title.",
  "project_summary": "Goals and deliverables.",
  "proposed_tech_stack": [{"type": "Backend", "technology": "...", "reasoning": "..."}],
  "major_milestones_or_phases": [
    {"milestone_id": "M1", "title": "...", "description": "...", "key_deliverables": ["..."]}
  ],
  "potential_risks_and_mitigations": [{"risk": "...", "mitigation": "..."}],
  "estimated_overall_complexity": "Low | Medium | High | Very High"
}
"""

_BREAKDOWN_SCHEMA = """
Schema for your JSON array response (one element per sub-task, in execution order):
[
  {
    "subtask_id": "M1_T001",
    "title": "Actionable title.",
    "description": "What needs to be done.",
    "parent_milestone_id": "M1",
    "persona": "Executor role best suited to the task, e.g. backend, frontend, qa, devops.",
    "dependencies_subtask_ids": ["..."],
    "acceptance_criteria": ["..."]
  }
]
"""

_CODE_ANALYSIS_SCHEMA = """
Schema for your JSON response:
{
  "file_path": "Path of the analysed file.",
  "summary": "What this file does.",
  "detailed_findings": [
    {
      "finding_type": "KeyModuleIdentification | CodeSmell | DependencyIssue | ...",
      "description": "...",
      "severity": "Low"
    }
  ],
  "elements_exported": ["Functions, classes or values other modules use."],
  "confidence_score": 0.0
}
"""


def build_request_understanding_prompt(context: dict[str, Any]) -> str:
    user_input = str(context.get("user_input", ""))
    project_lines: list[str] = []
    repository_url = context.get("repository_url")
    if repository_url:
        project_lines.append(f"Repository URL: {repository_url}")
        branch = context.get("current_branch_or_commit")
        if branch:
            project_lines.append(f"Current branch/commit: {branch}")
    understanding = context.get("preliminary_code_understanding")
    if understanding:
        project_lines.append(
            "Preliminary code understanding:\n" + json.dumps(understanding, indent=2, default=str)
        )
    extra = {
        key: value
        for key, value in context.items()
        if key
        not in {
            "user_input",
            "repository_url",
            "current_branch_or_commit",
            "preliminary_code_understanding",
            "analysis_needed_for_modification",
        }
    }
    if extra:
        project_lines.append("Additional context:\n" + json.dumps(extra, indent=2, default=str))

    project_block = "\n".join(project_lines)
    return (
        "You are an expert system that analyses software development requests.\n"
        "Extract every relevant detail of the request below as a JSON object.\n\n"
        f'User request:\n"{user_input}"\n\n'
        f"{project_block}\n"
        f"{_UNDERSTANDING_SCHEMA}\n"
        f"{JSON_OUTPUT_INSTRUCTION}\n"
    )


def build_strategic_plan_prompt(understanding: Any) -> str:
    return (
        "You are an expert project planner and software architect.\n"
        "Using the structured request understanding below, produce a high-level plan "
        "covering technology choices, milestones and risks.\n\n"
        "Structured request understanding:\n"
        f"{json.dumps(understanding, indent=2, default=str)}\n"
        f"{_PLAN_SCHEMA}\n"
        f"{JSON_OUTPUT_INSTRUCTION}\n"
    )


def build_subtask_breakdown_prompt(plan: Any, understanding: Any) -> str:
    return (
        "You are an expert task decomposer.\n"
        "Break the project plan below into small, actionable sub-tasks. Every sub-task "
        "must name the persona of the executor that should handle it.\n\n"
        f"Project plan:\n{json.dumps(plan, indent=2, default=str)}\n\n"
        "Initial request understanding (for context):\n"
        f"{json.dumps(understanding, indent=2, default=str)}\n"
        f"{_BREAKDOWN_SCHEMA}\n"
        f"{JSON_OUTPUT_INSTRUCTION}\n"
    )


def build_code_analysis_prompt(file_path: str, content: str, language: str | None = None) -> str:
    fence = language or ""
    return (
        "You are an expert code analyser. Analyse the file below and describe its role "
        "in the repository.\n\n"
        f"Path: {file_path}\n"
        f"Language: {language or 'auto-detect'}\n"
        f"```{fence}\n{content}\n```\n"
        f"{_CODE_ANALYSIS_SCHEMA}\n"
        f"{JSON_OUTPUT_INSTRUCTION}\n"
    )
