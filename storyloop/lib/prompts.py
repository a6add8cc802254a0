"""
Prompt templates sent to the AI tool.

Bundled templates live in storyloop/prompts/*.md:
    story     - the iteration prompt for one story
    continue  - nudge written to a silent interactive tool
    gate_fix  - re-invocation after a failed quality gate

A project can replace any of them by dropping a file with the same name in
.storyloop/prompts/. Templates use str.format() placeholders ({story_id});
{{ and }} are literal braces. HTML comments are stripped before rendering,
so templates can document their variables.
"""

import logging
import re
from functools import lru_cache
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

__all__ = ["PromptError", "load_prompt", "render_prompt", "build_section", "clear_cache", "PROMPTS_DIR"]

PROMPTS_DIR = Path(__file__).resolve().parent.parent / "prompts"

_HTML_COMMENT = re.compile(r'<!--.*?-->\s*', re.DOTALL)

TRUNCATION_NOTE = "\n\n(truncated)"


class PromptError(Exception):
    """A template is missing or can't be rendered."""
    pass


def _template_path(name: str, override_dir: Optional[Path]) -> Path:
    if override_dir is not None:
        override = override_dir / f"{name}.md"
        if override.is_file():
            return override
    return PROMPTS_DIR / f"{name}.md"


@lru_cache(maxsize=16)
def load_prompt(name: str, override_dir: Optional[Path] = None) -> str:
    """
    Template text for name, with HTML comments removed. Cached per
    (name, override_dir), so an override edited mid-run is picked up on
    the next `storyloop run`.

    Raises:
        PromptError: If neither an override nor a bundled template exists
    """
    path = _template_path(name, override_dir)
    try:
        text = path.read_text()
    except FileNotFoundError:
        raise PromptError(f"Prompt template '{name}' not found. Expected file: {path}") from None

    if path.parent != PROMPTS_DIR:
        logger.info(f"Using project prompt override {path}")
    return _HTML_COMMENT.sub('', text).lstrip()


def render_prompt(name: str, override_dir: Optional[Path] = None, **kwargs) -> str:
    """Fill a template's placeholders.

    Raises:
        PromptError: If the template is missing or a placeholder has no value
    """
    template = load_prompt(name, override_dir)
    try:
        return template.format(**kwargs)
    except KeyError as e:
        raise PromptError(
            f"Missing required variable {e} in prompt '{name}'. Provided: {sorted(kwargs)}"
        ) from e
    except (IndexError, ValueError) as e:
        # Stray single braces in an override
        raise PromptError(f"Prompt '{name}' is not a valid template: {e}") from e


def build_section(
    content: Optional[str],
    header: str,
    empty_msg: Optional[str] = None,
    max_chars: Optional[int] = None,
) -> str:
    """Markdown section under header, or "" when there's nothing to say.

    Content longer than max_chars keeps its beginning and is marked truncated.
    """
    if not content:
        return f"{header}\n\n{empty_msg}\n" if empty_msg is not None else ""
    if max_chars is not None and len(content) > max_chars:
        content = content[:max_chars].rstrip() + TRUNCATION_NOTE
    return f"{header}\n\n{content}\n"


def clear_cache():
    load_prompt.cache_clear()
