"""Prompt templating and instruction-shaping helpers."""
from __future__ import annotations
from pathlib import Path

DEFAULT_TEMPLATE = (
    "system\n"
    "You are a helpful AI assistant using Markdown formatting.\n\n"
    "user\n"
    "{{input}}\n\n"
    "assistant"
)


def load_template(path: str = "configs/prompt_template.txt") -> str:
    """
    Load a prompt template file.

    Falls back to the built-in template when the file does not exist.

    Args:
        path: Path to template.
    """
    p = Path(path)
    if not p.is_file():
        return DEFAULT_TEMPLATE
    return p.read_text(encoding="utf-8")


def render_prompt(template: str, user_input: str) -> str:
    """
    Render user input into the template.

    Args:
        template: Template content containing {{input}}.
        user_input: Input string.

    Returns:
        Rendered prompt.
    """
    return template.replace("{{input}}", user_input).strip()


def apply_directive(instruction: str, directive: str | None) -> str:
    """Prepend a fixed directive, separated from the instruction by one blank line."""
    if not directive or not directive.strip():
        return instruction
    return f"{directive.strip()}\n\n{instruction}"


def extract_final_answer(text: str, marker: str | None) -> str:
    """
    Keep only the text after ``marker``; everything before it is hidden reasoning.

    Args:
        text: Raw generated text.
        marker: Literal marker such as "Final Answer:". Empty disables extraction.

    Returns:
        The trimmed answer, or the whole trimmed text when the marker is absent.
    """
    if marker:
        idx = text.find(marker)
        if idx != -1:
            return text[idx + len(marker):].strip()
    return text.strip()
