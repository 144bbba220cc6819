"""Persona registry: Markdown files with YAML frontmatter, body is the system prompt."""

import logging
from collections.abc import Sequence
from pathlib import Path

import frontmatter

from metapanel.models import Persona, SpeechStyle

logger = logging.getLogger(__name__)

DEFAULT_COLOR = "#3B82F6"


def parse_persona(file_path: Path) -> tuple[int, Persona]:
    """Parse one persona file. Returns (sort order, persona)."""
    post = frontmatter.load(str(file_path))
    meta = dict(post.metadata)

    style_raw = meta.get("speech_style")
    style = None
    if isinstance(style_raw, dict):
        style = SpeechStyle(**{k: str(v) for k, v in style_raw.items()
                               if k in ("style", "styledegree", "rate", "pitch")})

    persona = Persona(
        id=str(meta.get("id") or file_path.stem),
        name=str(meta.get("name") or file_path.stem),
        system_prompt=post.content.strip(),
        color=str(meta.get("color") or DEFAULT_COLOR),
        voice_hint=str(meta["voice"]) if meta.get("voice") else None,
        short_bio=str(meta.get("short_bio", "")),
        speech_style=style,
    )
    return int(meta.get("order", 0)), persona


def load_personas(personas_dir: Path) -> list[Persona]:
    """Load every *.md persona in personas_dir, ordered by `order` then id.

    Raises:
        FileNotFoundError: If the directory does not exist.
        ValueError: If two files declare the same persona id.
    """
    if not personas_dir.is_dir():
        raise FileNotFoundError(f"Personas directory not found: {personas_dir}")

    parsed = [parse_persona(p) for p in sorted(personas_dir.glob("*.md"))]
    parsed.sort(key=lambda item: (item[0], item[1].id))

    seen: set[str] = set()
    for _, persona in parsed:
        if persona.id in seen:
            raise ValueError(f"Duplicate persona id: {persona.id}")
        seen.add(persona.id)

    logger.debug("Loaded %d personas from %s", len(parsed), personas_dir)
    return [persona for _, persona in parsed]


def select_panel(personas: Sequence[Persona], member_ids: Sequence[str]) -> list[Persona]:
    """Pick panel members in the order given. Unknown ids are skipped with a warning."""
    by_id = {p.id: p for p in personas}
    panel: list[Persona] = []
    for member_id in member_ids:
        if member_id not in by_id:
            logger.warning("Persona '%s' unknown, skipping", member_id)
            continue
        panel.append(by_id[member_id])
    return panel
