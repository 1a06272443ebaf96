"""Command-line interface for consultation transcription."""

import argparse
import asyncio
import logging
import sys

from .transcription.audit_client import AuditClient
from .transcription.cache_utils import clear_models_cache, describe_models_cache
from .transcription.config import DEFAULT_ENGINE_PRIORITY, DEFAULT_LANGUAGE
from .transcription.engines.factory import build_engine_factories, get_registered_engines, resolve_engine_id
from .transcription.logging_utils import configure_logging
from .transcription.models import (
    EngineSwitchEvent,
    MergedTranscript,
    TranscriptionMode,
    TranscriptionStatus,
    TranscriptionUpdateEvent,
)
from .transcription.orchestrator import EngineOrchestrator
from .transcription.session import SessionController


class ConsultScribeCLI:
    """Command-line front end for a SessionController."""

    def __init__(self, controller: SessionController, show_confidence_percentage: bool = True) -> None:
        """
        Initialize the CLI.

        Args:
            controller: Session controller to drive
            show_confidence_percentage: Whether to show confidence percentages in output
        """
        self._controller = controller
        self._controller.on_update = self._on_update
        self._controller.on_engine_switch = self._on_engine_switch
        self._show_confidence_percentage = show_confidence_percentage
        self._running = False
        self._segment_count = 0

    async def start_recording(self) -> bool:
        print("🎤 Starting consultation transcription...")
        if not await self._controller.on_start_recording():
            errors = {k: v for k, v in self._controller.errors.as_dict().items() if v}
            print(f"❌ Could not start recording: {errors or 'session already active'}")
            return False

        self._running = True
        engine = self._controller.orchestrator.active_engine_name
        print(f"✅ Recording with {engine}. Speak into your microphone!")
        if self._controller.mode is TranscriptionMode.AUTOMATIC:
            print("   Recording stops automatically after a long silence, or press Ctrl+C.")
        else:
            print("   Press Ctrl+C to stop.")
        return True

    async def stop_recording(self) -> MergedTranscript | None:
        if not self._running:
            return None

        print("🛑 Stopping, building final transcript...")
        self._running = False
        merged = await self._controller.on_stop_recording()
        if merged is None:
            merged = self._controller.merged
        self._print_summary(merged)
        return merged

    def _on_update(self, event: TranscriptionUpdateEvent) -> None:
        if not event.is_final or not event.text.strip():
            return

        self._segment_count += 1
        if self._show_confidence_percentage and event.confidence is not None:
            confidence_percent = round(event.confidence * 100)
            print(f"[{self._segment_count}] {event.text} ({confidence_percent}%)")
        else:
            print(f"[{self._segment_count}] {event.text}")

    def _on_engine_switch(self, event: EngineSwitchEvent) -> None:
        print(f"🔀 Switched engine {event.previous_engine} → {event.new_engine}: {event.reason}")

    def _print_summary(self, merged: MergedTranscript | None) -> None:
        for name, message in self._controller.errors.as_dict().items():
            if message:
                print(f"⚠️ {name}: {message}")

        if merged is None or not merged.merged_transcript:
            print("🔇 No speech was transcribed.")
            return

        print("\n📝 Transcript")
        print(merged.format_dialogue())
        if merged.summary:
            print(f"\n📋 Summary\n{merged.summary}")

    async def run(self) -> None:
        """
        Main CLI run loop.

        Handles startup, main loop, and graceful shutdown.
        """
        try:
            if not await self.start_recording():
                return

            while self._controller.status is TranscriptionStatus.RECORDING:
                await asyncio.sleep(0.1)

            # Automatic stop or a failed session ended recording on its own
            self._running = False
            while self._controller.status is TranscriptionStatus.PROCESSING:
                await asyncio.sleep(0.1)
            if self._controller.status is TranscriptionStatus.ERROR:
                await self._controller.on_stop_recording()
            self._print_summary(self._controller.merged)

        except (KeyboardInterrupt, asyncio.CancelledError):
            print("\n👋 Goodbye!")
        except Exception as e:
            print(f"❌ Unexpected error: {e}")
        finally:
            if self._running:
                await self.stop_recording()
            await self._controller.close()


def build_controller(
    engines: list[str] | None = None,
    language: str = DEFAULT_LANGUAGE,
    mode: TranscriptionMode = TranscriptionMode.MANUAL,
    enable_diarization: bool = True,
    audit_url: str | None = None,
) -> SessionController:
    """
    Assemble a SessionController from command-line choices.

    Args:
        engines: Engine names in fallback order (defaults to the built-in priority)
        language: Transcription language code
        mode: Manual or automatic stop
        enable_diarization: Whether to label speakers after each session
        audit_url: Audit endpoint (falls back to the environment variable)

    Returns:
        A controller ready to record
    """
    orchestrator = EngineOrchestrator(
        engine_factories=build_engine_factories(engines or list(DEFAULT_ENGINE_PRIORITY)),
        language=language,
    )
    return SessionController(
        orchestrator=orchestrator,
        audit_client=AuditClient(endpoint=audit_url),
        enable_diarization=enable_diarization,
        mode=mode,
        language=language,
    )


async def main(
    engines: list[str] | None = None,
    language: str = DEFAULT_LANGUAGE,
    mode: TranscriptionMode = TranscriptionMode.MANUAL,
    enable_diarization: bool = True,
    audit_url: str | None = None,
    show_confidence_percentage: bool = True,
) -> None:
    """Main entry point for the CLI application."""
    controller = build_controller(
        engines=engines,
        language=language,
        mode=mode,
        enable_diarization=enable_diarization,
        audit_url=audit_url,
    )
    cli = ConsultScribeCLI(controller, show_confidence_percentage=show_confidence_percentage)
    try:
        await cli.run()
    except KeyboardInterrupt:
        pass  # Graceful shutdown already handled in cli.run()


def create_argument_parser() -> argparse.ArgumentParser:
    """
    Create and configure the argument parser for the CLI.

    Returns:
        Configured ArgumentParser instance
    """
    parser = argparse.ArgumentParser(
        description="Consult Scribe CLI - Real-time transcription of medical consultations",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  consult-scribe                                   # Start with defaults
  consult-scribe --engine remote-api               # Use only the remote API
  consult-scribe --engine local-whisper --engine native-speech
  consult-scribe --language en                     # Transcribe English
  consult-scribe --mode automatic                  # Stop after a long silence
  consult-scribe --no-diarization                  # Skip speaker labelling
  consult-scribe --audit-url https://host/audit    # Audit the final transcript
  consult-scribe --cache-info                      # Show model cache usage
  consult-scribe --clear-cache                     # Delete downloaded models
  consult-scribe -v                                # Enable verbose logging

Controls:
  Ctrl+C    - Stop recording, print the transcript and exit

Environment:
  OPENAI_API_KEY             API key for the remote-api engine
  CONSULT_SCRIBE_AUDIT_URL   Default audit endpoint
        """,
    )

    parser.add_argument(
        "--engine",
        action="append",
        type=resolve_engine_id,
        choices=get_registered_engines(),
        default=None,
        metavar="NAME",
        help=(
            "Transcription engine to try, repeat to set the fallback order "
            f"(default: {', '.join(DEFAULT_ENGINE_PRIORITY)})"
        ),
    )

    parser.add_argument(
        "--language",
        type=str,
        default=DEFAULT_LANGUAGE,
        help=f"Language code of the consultation (default: {DEFAULT_LANGUAGE})",
    )

    parser.add_argument(
        "--mode",
        choices=[mode.value for mode in TranscriptionMode],
        default=TranscriptionMode.MANUAL.value,
        help="Stop manually with Ctrl+C, or automatically after a long silence",
    )

    parser.add_argument(
        "--no-diarization",
        action="store_true",
        help="Skip speaker diarization of the finished recording",
    )

    parser.add_argument(
        "--audit-url",
        type=str,
        default=None,
        metavar="URL",
        help="Endpoint that audits the final transcript (default: $CONSULT_SCRIBE_AUDIT_URL)",
    )

    parser.add_argument(
        "--no-confidence",
        action="store_true",
        help="Hide confidence percentages in transcription output",
    )

    parser.add_argument(
        "--clear-cache",
        action="store_true",
        help="Clear downloaded model cache and re-download models on next use",
    )

    parser.add_argument(
        "--cache-info",
        action="store_true",
        help="Show model cache location and size",
    )

    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Enable verbose logging and debug information",
    )

    parser.add_argument(
        "--trace",
        action="store_true",
        help="Enable trace logging (most verbose, includes all debug info)",
    )

    return parser


def clear_model_cache() -> bool:
    """
    Clear downloaded model files.

    Returns:
        True if cache was cleared successfully, False otherwise
    """
    try:
        return clear_models_cache()
    except Exception as e:
        logging.error(f"Error during model cache reset: {e}")
        return False


def print_cache_info() -> None:
    info = describe_models_cache()
    print(f"📦 Model cache: {info['path']}")
    print(f"   Model assets:       {info['assets']}")
    print(f"   Recognizer models:  {info['recognizer']}")
    print(f"   Total:              {info['total']}")


def handle_arguments(args: argparse.Namespace) -> tuple[bool, bool]:
    """
    Handle parsed command-line arguments.

    Args:
        args: Parsed arguments from argparse

    Returns:
        Tuple of (success, should_continue):
        - success: True if all operations succeeded, False if any failed
        - should_continue: True if execution should continue, False if it should stop
    """
    configure_logging(verbose=args.verbose, trace=args.trace)
    if args.verbose or args.trace:
        logging.getLogger("faster_whisper").setLevel(logging.INFO)
    else:
        # Only show faster-whisper warnings in normal mode
        logging.getLogger("faster_whisper").setLevel(logging.WARNING)
        logging.getLogger("httpx").setLevel(logging.WARNING)

    cache_operations_performed = False

    if args.cache_info:
        print_cache_info()
        cache_operations_performed = True

    if args.clear_cache:
        try:
            success = clear_model_cache()
            if success:
                print("✅ Model cache cleared successfully.")
            else:
                print("❌ Failed to clear model cache.")
                return False, False
            cache_operations_performed = True
        except Exception as e:
            print(f"❌ Error clearing model cache: {e}")
            return False, False

    if cache_operations_performed:
        return True, False

    return True, True


def cli_entry_with_args(argv: list[str] | None = None) -> None:
    """CLI entry point with argument parsing."""
    parser = create_argument_parser()

    try:
        args = parser.parse_args(argv)

        success, should_continue = handle_arguments(args)

        if not success:
            sys.exit(1)

        if not should_continue:
            sys.exit(0)

        asyncio.run(
            main(
                engines=args.engine,
                language=args.language,
                mode=TranscriptionMode(args.mode),
                enable_diarization=not args.no_diarization,
                audit_url=args.audit_url,
                show_confidence_percentage=not args.no_confidence,
            )
        )

    except KeyboardInterrupt:
        pass  # Graceful shutdown
    except SystemExit:
        # Re-raise SystemExit (from argparse help, etc.)
        raise
    except Exception:
        sys.exit(1)


def cli_entry() -> None:
    """Console script entry point."""
    cli_entry_with_args()


if __name__ == "__main__":
    cli_entry_with_args()
