"""
Prompt construction for declaration analysis.
Templates live in beyanname_ai/templates/prompts/ so wording can change without code edits.
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass

from jinja2 import Environment, FileSystemLoader, StrictUndefined

logger = logging.getLogger(__name__)

# ─── Jinja2 Template Environment ─────────────────────────────────────────────
TEMPLATE_DIR = os.path.join(os.path.dirname(os.path.dirname(__file__)), "templates", "prompts")
_jinja_env = Environment(
    loader=FileSystemLoader(TEMPLATE_DIR),
    trim_blocks=True,
    lstrip_blocks=True,
    undefined=StrictUndefined,
)


@dataclass(frozen=True)
class Prompt:
    system_instructions: str
    prompt_text: str


def build_prompt(
    payload_text: str,
    input_refs: list[str] | None = None,
    part_number: int = 1,
    total_parts: int = 1,
) -> Prompt:
    """Render the system and user prompt for one payload part (1-based ``part_number``)."""
    system = _jinja_env.get_template("analysis_system.txt").render().strip()
    user = _jinja_env.get_template("analysis_user.txt").render(
        payload_text=payload_text,
        input_refs=input_refs or [],
        part_number=part_number,
        total_parts=total_parts,
    ).strip()
    logger.debug(
        "Prompt built for part %d/%d (system: %d chars, user: %d chars).",
        part_number, total_parts, len(system), len(user),
    )
    return Prompt(system_instructions=system, prompt_text=user)
