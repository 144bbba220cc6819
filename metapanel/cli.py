"""Click CLI: config loading, persona selection, backend wiring, the ask loop."""

import asyncio
import logging
import sys

import click
from dotenv import load_dotenv
from rich.logging import RichHandler

from config.config_loader import AppConfig, clamp_context_window, load_config
from metapanel.backends.ollama import OllamaChatBackend
from metapanel.healthcheck import run_health_checks
from metapanel.models import PanelRunConfig, Persona, ResponseMode, SpeechStyle, TTSProvider, TTSSettings
from metapanel.output import SpeakingIndicator, console, print_message, print_panel_header
from metapanel.orchestrator import resolve_model
from metapanel.personas import load_personas, select_panel
from metapanel.playback import PlaybackQueue, apply_voice_hints
from metapanel.session import PanelSession
from metapanel.speech.azure import AzureSpeechBackend
from metapanel.speech.base import SpeechBackend
from metapanel.speech.elevenlabs import ElevenLabsSpeechBackend
from metapanel.speech.offline import OfflineSpeechBackend

logger = logging.getLogger(__name__)

EXIT_WORDS = {"exit", "quit", ":q"}


def _setup_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(message)s",
        handlers=[RichHandler(rich_tracebacks=True, show_path=False)],
    )
    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)


def _build_run_config(
    config: AppConfig,
    mode: str | None,
    context: int | None,
    model: str | None,
) -> PanelRunConfig:
    """CLI flags override settings.yaml."""
    return PanelRunConfig(
        mode=ResponseMode(mode or config.panel.mode),
        context_window=clamp_context_window(context) if context is not None else config.panel.context_window,
        default_model=model or config.chat.model,
        model_overrides=dict(config.chat.model_overrides),
    )


def _build_tts_settings(config: AppConfig, provider: str | None, personas: list[Persona]) -> TTSSettings:
    speech = config.speech
    settings = TTSSettings(
        provider=TTSProvider(provider or speech.provider),
        default_voice=speech.default_voice,
        persona_voices=dict(speech.persona_voices),
        azure_region=speech.azure_region,
        azure_key=speech.azure_key,
        elevenlabs_key=speech.elevenlabs_key,
    )
    return apply_voice_hints(settings, personas)


def _build_speech_backends(config: AppConfig, personas: list[Persona]) -> dict[TTSProvider, SpeechBackend]:
    styles: dict[str, SpeechStyle] = {p.id: p.speech_style for p in personas if p.speech_style}
    return {
        TTSProvider.OFFLINE: OfflineSpeechBackend(rate=config.speech.rate),
        TTSProvider.AZURE: AzureSpeechBackend(styles=styles),
        TTSProvider.ELEVENLABS: ElevenLabsSpeechBackend(),
    }


def _determine_panel(personas: list[Persona], config: AppConfig, panel_arg: str | None) -> list[Persona]:
    """--panel overrides the configured members; no members means everyone."""
    if panel_arg:
        member_ids = [m.strip() for m in panel_arg.split(",") if m.strip()]
    else:
        member_ids = config.panel.members or [p.id for p in personas]
    return select_panel(personas, member_ids)


def _panel_models(panel: list[Persona], run_config: PanelRunConfig) -> list[str]:
    """Distinct models the panel will call, in first-use order."""
    return list(dict.fromkeys(resolve_model(p, run_config) for p in panel))


def _check_endpoint(base_url: str, models: list[str]) -> None:
    """Run health checks, print results, and ask what to do on failures."""
    console.print("\n[bold]Checking chat endpoint...[/bold]")
    results = asyncio.run(run_health_checks(base_url, models))

    failed = [m for m, (ok, _) in results.items() if not ok]
    for model_name in models:
        ok, err = results[model_name]
        if ok:
            console.print(f"  [green]OK  [/green] {model_name}")
        else:
            console.print(f"  [red]FAIL[/red] {model_name}: {err.splitlines()[0][:120]}")

    if not failed:
        console.print()
        return

    console.print(
        f"\n[yellow]{len(failed)} model(s) unavailable.[/yellow] "
        "Panelists using them will answer with fallback text."
    )
    if not click.confirm("Continue anyway?", default=True):
        sys.exit(0)
    console.print()


async def _ask_and_print(session: PanelSession, question: str, personas_by_id: dict[str, Persona]) -> None:
    async for message in session.ask(question):
        print_message(message, personas_by_id)


async def _run(
    session: PanelSession,
    questions: list[str],
    interactive: bool,
) -> None:
    personas_by_id = {p.id: p for p in session.personas}
    unsubscribe = None
    if session.playback is not None:
        unsubscribe = session.playback.bus.subscribe(SpeakingIndicator(personas_by_id))
    try:
        for question in questions:
            await _ask_and_print(session, question, personas_by_id)
        while interactive:
            question = await asyncio.to_thread(click.prompt, "\nAsk the panel", default="", show_default=False)
            if question.strip().lower() in EXIT_WORDS:
                break
            await _ask_and_print(session, question, personas_by_id)
    finally:
        await session.aclose()
        if unsubscribe is not None:
            unsubscribe()


@click.command()
@click.argument("question", required=False)
@click.option("--mode", type=click.Choice([m.value for m in ResponseMode]), default=None,
              help="Response protocol (default: from config)")
@click.option("--context", type=click.IntRange(0, 50), default=None,
              help="Prior transcript entries sent with each request (default: from config)")
@click.option("--model", default=None, help="Default chat model (default: from config)")
@click.option("--base-url", default=None, help="Ollama base URL (default: from config)")
@click.option("--provider", type=click.Choice([p.value for p in TTSProvider]), default=None,
              help="Speech provider (default: from config)")
@click.option("--panel", "panel_arg", default=None, help="Comma-separated persona ids, in speaking order")
@click.option("--no-speech", is_flag=True, help="Print answers without speaking them")
@click.option("--verbose", is_flag=True, help="Enable DEBUG-level logging")
@click.option("--skip-health-check", is_flag=True, default=False,
              help="Skip the chat endpoint check at startup")
def main(
    question: str | None,
    mode: str | None,
    context: int | None,
    model: str | None,
    base_url: str | None,
    provider: str | None,
    panel_arg: str | None,
    no_speech: bool,
    verbose: bool,
    skip_health_check: bool,
) -> None:
    """MetaPanel -- ask a panel of personas, hear them answer.

    \b
    Examples:
      metapanel "What are the key open-source GeoAI tools to watch?"
      metapanel --mode fastest_first --panel maya,otto "Is Web Mercator harmful?"
      metapanel --provider azure --context 10
    """
    load_dotenv()
    _setup_logging(verbose)

    try:
        config = load_config()
        personas = load_personas(config.panel.personas_dir)
    except (FileNotFoundError, ValueError) as exc:
        console.print(f"[bold red]Config error:[/bold red] {exc}")
        sys.exit(1)

    panel = _determine_panel(personas, config, panel_arg)
    if not panel:
        console.print("[bold red]Error:[/bold red] No personas selected. Check panel.members or --panel.")
        sys.exit(1)

    run_config = _build_run_config(config, mode, context, model)
    effective_base_url = base_url or config.chat.base_url

    if not skip_health_check:
        _check_endpoint(effective_base_url, _panel_models(panel, run_config))

    playback = None
    if config.speech.enabled and not no_speech:
        playback = PlaybackQueue(
            _build_tts_settings(config, provider, panel),
            _build_speech_backends(config, panel),
        )

    session = PanelSession(
        personas=panel,
        config=run_config,
        chat=OllamaChatBackend(effective_base_url, timeout_sec=config.chat.timeout_sec),
        playback=playback,
    )
    print_panel_header(panel, run_config)
    asyncio.run(_run(session, [question] if question else [], interactive=question is None))


if __name__ == "__main__":
    main()
