"""Prompt templates for the code assistant.

System prompts embed the current file context and the live tool catalog;
quick actions are canned user messages sent through the regular
response path.
"""

from __future__ import annotations

from typing import Mapping

from ..mcp.catalog import NO_TOOLS_NOTICE, SEPARATOR

DEFAULT_LANGUAGE = "plaintext"

EXPLAIN_MESSAGE = (
    "Please explain what this code does, how it works, and highlight any interesting "
    "patterns or potential improvements."
)
FIND_BUGS_MESSAGE = (
    "Please review this code for potential bugs, errors, or issues. Look for logic errors, "
    "edge cases, performance problems, and security vulnerabilities."
)
OPTIMIZE_MESSAGE = (
    "Please analyze this code for optimization opportunities. Focus on performance "
    "improvements, code clarity, maintainability, and best practices."
)

QUICK_ACTIONS: Mapping[str, str] = {
    "explain": EXPLAIN_MESSAGE,
    "bugs": FIND_BUGS_MESSAGE,
    "optimize": OPTIMIZE_MESSAGE,
}

CONNECTION_TEST_MESSAGE = "Hello"


def build_system_prompt(
    language: str,
    code: str,
    file_name: str | None = None,
    catalog_description: str = NO_TOOLS_NOTICE,
) -> str:
    """System prompt for a chat turn about the file currently open in the editor."""

    language = language or DEFAULT_LANGUAGE
    file_info = f"File: {file_name}\n" if file_name else ""
    return f"""You are an expert code assistant specializing in {language} development. You provide helpful, accurate, and actionable advice about code.

{file_info}Current {language} code context:
```{language}
{code}
```

Guidelines:
- Provide clear, concise explanations
- Focus on best practices and code quality
- Suggest specific improvements when relevant
- Be encouraging and helpful
- If the code is empty or minimal, offer to help with starting the implementation
- For debugging requests, provide step-by-step analysis
- For optimization requests, focus on performance and maintainability

## Tools

{catalog_description}
{_tool_usage_section(catalog_description)}
Respond in a conversational, helpful tone as if you're pair programming with the user."""


def _tool_usage_section(catalog_description: str) -> str:
    if catalog_description == NO_TOOLS_NOTICE:
        return ""
    return f"""
Tool names take the form <server>{SEPARATOR}<tool>. Call a tool only when the answer depends on
information outside the code shown above (other files, repository history, databases, the web).
Tool results are shown to the user inline, so do not repeat them verbatim.
"""


def build_generation_prompt(language: str, context: str | None = None) -> str:
    """System prompt for standalone code generation (no file context, no tools)."""

    language = language or DEFAULT_LANGUAGE
    context_line = f"Context: {context}" if context else ""
    return f"""You are an expert {language} developer. Generate clean, well-commented, production-ready code.

{context_line}

Guidelines:
- Write clear, readable code with appropriate comments
- Follow {language} best practices and conventions
- Include error handling where appropriate
- Make the code modular and maintainable
- Add type annotations if applicable (TypeScript, etc.)"""


def quick_action_message(action: str) -> str:
    try:
        return QUICK_ACTIONS[action]
    except KeyError:
        raise ValueError(f"Unknown quick action '{action}'. Expected one of: {', '.join(QUICK_ACTIONS)}") from None


__all__ = [
    "DEFAULT_LANGUAGE",
    "EXPLAIN_MESSAGE",
    "FIND_BUGS_MESSAGE",
    "OPTIMIZE_MESSAGE",
    "QUICK_ACTIONS",
    "CONNECTION_TEST_MESSAGE",
    "build_system_prompt",
    "build_generation_prompt",
    "quick_action_message",
]
