"""Rich console output: panel strip, message bubbles, speaking indicator."""

import logging
from collections.abc import Sequence

from rich.console import Console
from rich.panel import Panel
from rich.rule import Rule
from rich.table import Table
from rich.text import Text

from metapanel.models import AmplitudeEvent, PanelRunConfig, Persona, TranscriptMessage
from metapanel.orchestrator import resolve_model

logger = logging.getLogger(__name__)

console = Console(legacy_windows=False)

USER_COLOR = "#3B82F6"


def message_panel(message: TranscriptMessage, persona: Persona | None) -> Panel:
    """One chat bubble, bordered in the persona's color."""
    color = persona.color if persona else USER_COLOR
    author = persona.name if persona else (message.author or "Assistant")
    return Panel(
        Text(message.text),
        title=f"[bold]{author}[/bold]",
        title_align="left",
        subtitle="addendum" if message.is_addendum else None,
        border_style=color,
    )


def print_message(message: TranscriptMessage, personas_by_id: dict[str, Persona]) -> None:
    console.print(message_panel(message, personas_by_id.get(message.persona_id or "")))


def panel_table(personas: Sequence[Persona], config: PanelRunConfig) -> Table:
    """Panelist strip: name, bio and the model each persona will use."""
    table = Table(show_header=True, header_style="bold", box=None)
    table.add_column("Panelist")
    table.add_column("Bio", style="dim")
    table.add_column("Model")
    for persona in personas:
        table.add_row(
            Text(persona.name, style=f"bold {persona.color}"),
            persona.short_bio,
            resolve_model(persona, config),
        )
    return table


def print_panel_header(personas: Sequence[Persona], config: PanelRunConfig) -> None:
    console.print(Rule(f"[bold cyan]MetaPanel[/bold cyan] [{config.mode.value}]"))
    console.print(panel_table(personas, config))
    console.print()


class SpeakingIndicator:
    """Amplitude listener that announces when a panelist starts talking."""

    def __init__(self, personas_by_id: dict[str, Persona], out: Console | None = None) -> None:
        self._personas = personas_by_id
        self._console = out or console
        self._levels: dict[str, float] = {}

    def level(self, persona_id: str) -> float:
        return self._levels.get(persona_id, 0.0)

    def __call__(self, event: AmplitudeEvent) -> None:
        if not event.persona_id:
            return
        was_silent = self._levels.get(event.persona_id, 0.0) == 0.0
        self._levels[event.persona_id] = event.amp
        if was_silent and event.amp > 0:
            persona = self._personas.get(event.persona_id)
            if persona:
                self._console.print(f"[{persona.color}]{persona.name}[/] [dim]is speaking[/dim]")
