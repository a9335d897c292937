"""Prompt templates for every generation call made by the orchestration core.

This module contains:
- DECOMPOSE_PROMPT: Splits a request into a JSON task plan
- AGENT_INSTRUCTIONS: Per-kind instructions appended to a task prompt
- REVIEW_PROMPT: Review pass that removes disallowed patterns
- FIX_PROMPT: Self-heal pass fed with validation errors
- MERGE_SPECIALIST_PROMPT: Resolves same-path conflicts between tasks
- FAST_PROMPT: Single-call generation used by fast mode

Generated projects run in an in-browser Vite + React runtime, so the prompts
steer every agent away from server-side code.
"""

from models.schemas import ArtifactSet

# Imports that cannot run in the in-browser runtime, with their replacement.
DISALLOWED_IMPORTS: dict[str, str] = {
    "next/head": "document.title = 'Title'",
    "next/link": '<a href="..."> or react-router-dom',
    "next/image": '<img src="..." />',
    "next/router": "react-router-dom",
    "@prisma/client": "localStorage or fetch()",
    "express": "remove entirely",
    "fs": "remove entirely",
    "pg": "fetch() against an external API",
    "mysql2": "fetch() against an external API",
    "mongoose": "fetch() against an external API",
    "sequelize": "fetch() against an external API",
}

FILE_FORMAT_RULES = """\
## Output Format
Every file MUST be a fenced code block with a filename attribute:
```tsx filename="/App.tsx"
export default function App() { return <div />; }
```
Paths start with "/". Never emit placeholder-only files."""


def compose_prompt_sections(*sections: str) -> str:
    """Compose prompt sections into a single deterministic prompt."""
    cleaned = [section.strip() for section in sections if section and section.strip()]
    return "\n\n".join(cleaned)


def disallowed_patterns_table() -> str:
    rows = "\n".join(f"| {name} | {replacement} |" for name, replacement in DISALLOWED_IMPORTS.items())
    return f"| Disallowed import | Replace with |\n|---|---|\n{rows}"


DECOMPOSE_PROMPT = """\
You are a project planner for applications that run entirely in the browser
(Vite + React + TailwindCSS, no server).

## Available Agents
- design: UI/UX, layout, color scheme, presentational React components
- frontend: React code, state, components, styling
- research: best practices, library recommendations, examples

## Do Not Assign
- backend or database work. Translate such requests into client-side
  solutions (localStorage, IndexedDB, external APIs) and say so in the summary.

## Rules
- 2 to 5 tasks, each with a unique id.
- "dependencies" lists ids that must finish first. No cycles.
- "parallelGroups" orders all ids into groups; every dependency of a task
  must be in an earlier group. Every id appears in exactly one group.

## Output
Return JSON ONLY (no markdown):
{
  "projectName": "short-project-name",
  "summary": "What will be built",
  "subTasks": [
    {"id": "task-1", "agent": "design", "description": "...", "dependencies": [], "priority": "high"}
  ],
  "parallelGroups": [["task-1"], ["task-2", "task-3"]]
}"""


AGENT_INSTRUCTIONS: dict[str, str] = {
    "design": """\
Produce a UI specification (component hierarchy, hex colors, typography,
layout) and the matching presentational React components.""",
    "frontend": """\
Produce complete, runnable React + TypeScript files. The project must have
/App.tsx exporting `default function App()`, /main.tsx rendering it with
ReactDOM.createRoot, /index.html with <div id="root">, /package.json with a
"dev": "vite --host" script, and /vite.config.js.""",
    "backend": """\
The runtime is a browser: no server code. Simulate backend behaviour with a
client-side service module (for example /services/api.ts returning mock data
or calling external APIs with fetch()).""",
    "database": """\
The runtime cannot run a database server. Use localStorage, IndexedDB or an
in-memory store. Never generate prisma/, .sql, migration or .env files.""",
    "research": """\
Answer in prose: recommended libraries, patterns and pitfalls for this task.
Code blocks are optional.""",
}


def build_task_prompt(agent_kind: str, description: str, context: str = "") -> str:
    """Build the prompt for one sub-task.

    Args:
        agent_kind: Kind of agent running the task.
        description: What the task must produce.
        context: Summary of results from earlier groups, if any.
    """
    instructions = AGENT_INSTRUCTIONS.get(agent_kind, AGENT_INSTRUCTIONS["frontend"])
    context_section = f"## Context From Other Agents\n{context}" if context else ""
    return compose_prompt_sections(
        f"You are a specialized {agent_kind} agent.\n\n## Task\n{description}",
        context_section,
        instructions,
        "## Disallowed\n" + disallowed_patterns_table(),
        FILE_FORMAT_RULES if agent_kind != "research" else "",
    )


def format_artifacts(artifacts: ArtifactSet) -> str:
    """Render an artifact set as filename-tagged fenced blocks."""
    blocks = []
    for path, content in artifacts.items():
        lang = path.rsplit(".", 1)[-1] if "." in path else ""
        blocks.append(f'```{lang} filename="{path}"\n{content}\n```')
    return "\n\n".join(blocks)


REVIEW_PROMPT = """\
You are the lead code verifier for browser-only React applications.

## Your Job
1. Review the generated files below.
2. Remove or replace every disallowed import listed in the table.
3. Return the corrected files.

## Disallowed
{patterns}

## Output
If every file is clean, reply with exactly: NO_CHANGES
Otherwise return ALL files again, corrected, each as a fenced block with a
filename attribute.

## Files
{files}"""


def build_review_prompt(artifacts: ArtifactSet) -> str:
    return REVIEW_PROMPT.format(patterns=disallowed_patterns_table(), files=format_artifacts(artifacts))


FIX_PROMPT = """\
The files below failed validation (attempt {attempt} of {max_attempts}).

## Validation Errors
{errors}

## Instructions
Fix every error. Keep behaviour unchanged otherwise. Return ALL files, each
as a fenced block with a filename attribute.

## Files
{files}"""


def build_fix_prompt(
    artifacts: ArtifactSet,
    errors: list[str],
    attempt: int,
    max_attempts: int,
) -> str:
    return FIX_PROMPT.format(
        attempt=attempt,
        max_attempts=max_attempts,
        errors="\n".join(f"- {error}" for error in errors),
        files=format_artifacts(artifacts),
    )


MERGE_SPECIALIST_PROMPT = """\
You are the code merger for browser-only React applications. Several agents
wrote different content to the same files.

## Conflict Resolution
1. If both versions are valid, combine their features.
2. If they contradict, keep the more complete version.
3. If one uses disallowed imports, use the clean version.

## Conflicts
{conflicts}

## Output
Return JSON ONLY:
{{"files": {{"/App.tsx": "resolved content"}}}}"""


def build_merge_prompt(conflict_sections: list[str]) -> str:
    return MERGE_SPECIALIST_PROMPT.format(conflicts="\n\n".join(conflict_sections))


FAST_PROMPT = """\
You are a senior React engineer. Build the request below as a complete,
runnable browser-only project in a single reply.

## Request
{request}

{context}

{format_rules}"""


def build_fast_prompt(request: str, context: str = "") -> str:
    return FAST_PROMPT.format(
        request=request,
        context=f"## Context\n{context}" if context else "",
        format_rules=FILE_FORMAT_RULES,
    ).strip()
