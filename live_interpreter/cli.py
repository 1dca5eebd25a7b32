"""
Command-line interface for the live interpreter.

Provides commands for running a session, listing devices and languages,
and self-test.
"""

import argparse
import asyncio
import importlib
import sys

from loguru import logger

from .config import load_config, validate_environment, Config, SessionConfig
from .audio_devices import default_device_indices, list_audio_devices, find_device_by_name
from .credentials import mask_secret, provider_from_config
from .duplex import SpeakerChannel
from .errors import ConfigurationError, DeviceError
from .languages import all_languages
from .ptt import PTTHandler
from .session import LiveSession
from .state import SessionSnapshot
from .utils import setup_logger, format_device_list

REQUIRED_PACKAGES = [
    ("numpy", "NumPy"),
    ("sounddevice", "SoundDevice"),
    ("soxr", "pysoxr"),
    ("pydantic", "Pydantic"),
    ("dotenv", "python-dotenv"),
    ("yaml", "PyYAML"),
    ("websockets", "websockets"),
    ("loguru", "loguru"),
]

OPTIONAL_PACKAGES = [
    ("keyboard", "keyboard"),
]


def cmd_list_devices(args):
    """List all available audio devices."""
    print("\n🎤 Enumerating Audio Devices...")

    try:
        devices = list_audio_devices()
        default_in, default_out = default_device_indices()
    except DeviceError as e:
        print(f"❌ {e}")
        return 1
    print(format_device_list(devices, default_input=default_in, default_output=default_out))

    return 0


def cmd_list_languages(args):
    """List the supported languages."""
    for language in all_languages():
        print(f"  {language.value:<12} {language.code}")
    return 0


def cmd_self_test(args):
    """Run self-test to verify components."""
    print("\n🔧 Running Self-Test...\n")

    errors = []

    print("Checking required packages...")
    for module, name in REQUIRED_PACKAGES:
        try:
            importlib.import_module(module)
            print(f"  ✅ {name}")
        except (ImportError, OSError) as e:
            print(f"  ❌ {name} - {type(e).__name__}: {e}")
            errors.append(f"{name} not importable")

    for module, name in OPTIONAL_PACKAGES:
        try:
            importlib.import_module(module)
            print(f"  ✅ {name}")
        except ImportError:
            print(f"  ⚠️  {name} - optional, PTT disabled without it")
    print()

    env_errors = validate_environment()
    if env_errors:
        errors.extend(env_errors)
        for err in env_errors:
            print(f"❌ {err}")
    else:
        print("✅ API key present")

    try:
        config = load_config()
        print("✅ Configuration OK")
        print(f"   Key: {mask_secret(config.api_key)}")
    except ValueError as e:
        print(f"❌ {e}")
        errors.append(str(e))

    print("\n🎵 Checking audio devices...")
    try:
        devices = list_audio_devices()
    except DeviceError as e:
        print(f"❌ {e}")
        errors.append(str(e))
        devices = []
    input_devices = [d for d in devices if d['max_input_channels'] > 0]
    output_devices = [d for d in devices if d['max_output_channels'] > 0]

    if input_devices:
        print(f"✅ Found {len(input_devices)} input device(s)")
    else:
        print("❌ No input devices found")
        errors.append("No input devices")

    if output_devices:
        print(f"✅ Found {len(output_devices)} output device(s)")
    else:
        print("❌ No output devices found")
        errors.append("No output devices")

    print("\n" + "=" * 60)
    if errors:
        print(f"❌ Self-test FAILED with {len(errors)} error(s)")
        return 1
    print("✅ Self-test PASSED - all systems operational")
    return 0


def apply_overrides(config: Config, args) -> Config:
    """Apply CLI overrides to the loaded configuration."""
    session = config.session.model_dump()
    if args.lang_a:
        session["language_a"] = args.lang_a
    if args.lang_b:
        session["language_b"] = args.lang_b
    if args.split_audio:
        session["split_audio"] = True
    config.session = SessionConfig(**session)

    if args.mic_device:
        config.audio.mic_device = args.mic_device
    if args.output_device:
        config.audio.output_device = args.output_device
    if args.ptt_key:
        config.ptt.ptt_key = args.ptt_key
        config.ptt.enabled = True
    if args.log_level:
        config.logging.log_level = args.log_level
    return config


def _log_transcript(text: str, is_user: bool):
    if is_user:
        logger.info(f"==> [HEARD] {text}")
    else:
        logger.success(f"<== [INTERPRETED] {text}")


def _state_printer():
    last = {"state": None, "error": None}

    def on_change(snap: SessionSnapshot):
        if snap.connection_state != last["state"] or snap.error_message != last["error"]:
            last["state"], last["error"] = snap.connection_state, snap.error_message
            if snap.error_message:
                logger.error(f"[SESSION] {snap.error_message} (press r + Enter to retry)")
            else:
                logger.info(f"[SESSION] {snap.connection_state.value}")
    return on_change


async def run_session(config: Config, api_key=None) -> int:
    """Run one interactive session until the user quits."""
    session = LiveSession(
        config.session,
        credentials=provider_from_config(config, api_key),
        config=config,
        on_transcription=_log_transcript,
        loop=asyncio.get_running_loop(),
    )
    session.subscribe(_state_printer())

    ptt = None
    if config.session.split_audio and config.ptt.enabled:
        ptt = PTTHandler(ptt_key=config.ptt.ptt_key, debounce_ms=config.ptt.debounce_ms)
        ptt.subscribe(session.select_channel)
        if not ptt.start():
            logger.warning("PTT unavailable; type a or b to switch speakers")

    session.connect()

    loop = asyncio.get_running_loop()
    try:
        while True:
            line = await loop.run_in_executor(None, sys.stdin.readline)
            if not line:
                break
            command = line.strip().lower()
            if command == "q":
                break
            elif command == "m":
                session.toggle_mute()
                print("🔇 Muted" if session.is_muted else "🎤 Unmuted", flush=True)
            elif command == "r":
                session.retry()
            elif command in ("a", "b"):
                session.select_channel(SpeakerChannel(command.upper()))
            elif command:
                print("Commands: m=mute  r=retry  a/b=speaker  q=quit", flush=True)
    finally:
        if ptt:
            ptt.stop()
        await session.aclose()
        logger.info("Cleanup complete.")

    print(f"\n{len(session.transcript)} utterance(s) in this session")
    return 0


def cmd_run(args):
    """Run an interactive interpretation session."""
    print("\n🚀 Starting live interpreter...\n")

    try:
        config = apply_overrides(load_config(), args)
    except (ValueError, ConfigurationError) as e:
        print(f"\n❌ Configuration error: {e}")
        return 1

    setup_logger(
        level=config.logging.log_level,
        log_file=config.logging.log_file
    )
    if config.logging.transcript_file:
        logger.add(
            config.logging.transcript_file,
            rotation="10 MB",
            retention=5,
            level=config.logging.log_level,
            enqueue=True
        )

    for name, is_input in ((config.audio.mic_device, True), (config.audio.output_device, False)):
        if not name:
            continue
        try:
            found = find_device_by_name(name, input_device=is_input)
        except DeviceError as e:
            print(f"❌ {e}")
            return 1
        if found is None:
            print(f"❌ {'Microphone' if is_input else 'Output'} device not found: {name}")
            print("\nRun 'python -m live_interpreter.cli list-devices' to see available devices")
            return 1

    print("Configuration:")
    print(f"  Speaker A: {config.session.language_a.value}")
    print(f"  Speaker B: {config.session.language_b.value}")
    print(f"  Split audio: {config.session.split_audio}")
    print(f"  Mic Device: {config.audio.mic_device or 'Default'}")
    print(f"  Output Device: {config.audio.output_device or 'Default'}")
    if config.session.split_audio and config.ptt.enabled:
        print(f"  Hold {config.ptt.ptt_key} while Speaker B talks")
    print("\nCommands: m=mute  r=retry  a/b=speaker  q=quit\n")

    try:
        return asyncio.run(run_session(config, args.api_key))
    except KeyboardInterrupt:
        print("\n\n👋 Shutting down...")
        return 0
    except Exception as e:
        logger.exception(e)
        return 1


def main(argv=None):
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        description="Live interpreter - real-time two-way speech translation",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # List available audio devices
  python -m live_interpreter.cli list-devices

  # Run self-test
  python -m live_interpreter.cli self-test

  # Italian <-> English with defaults
  python -m live_interpreter.cli run

  # Two speakers on one microphone, F8 held while Speaker B talks
  python -m live_interpreter.cli run --lang-a Spanish --lang-b German \\
    --split-audio --ptt-key F8
        """
    )

    subparsers = parser.add_subparsers(dest='command', help='Command to execute')

    parser_list = subparsers.add_parser('list-devices', help='List all available audio devices')
    parser_list.set_defaults(func=cmd_list_devices)

    parser_langs = subparsers.add_parser('list-languages', help='List supported languages')
    parser_langs.set_defaults(func=cmd_list_languages)

    parser_test = subparsers.add_parser('self-test', help='Run self-test to verify components')
    parser_test.set_defaults(func=cmd_self_test)

    parser_run = subparsers.add_parser('run', help='Run an interpretation session')
    parser_run.add_argument('--lang-a', type=str, help='Speaker A language (default: Italian)')
    parser_run.add_argument('--lang-b', type=str, help='Speaker B language (default: English)')
    parser_run.add_argument('--split-audio', action='store_true', help='Two speaker channels on one microphone')
    parser_run.add_argument('--mic-device', type=str, help='Microphone device name (substring match)')
    parser_run.add_argument('--output-device', type=str, help='Output device name (substring match)')
    parser_run.add_argument('--ptt-key', type=str, help='Hotkey held while Speaker B talks (enables PTT)')
    parser_run.add_argument('--api-key', type=str, help='API key (default: GEMINI_API_KEY / API_KEY)')
    parser_run.add_argument(
        '--log-level',
        type=str,
        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'],
        help='Logging level (default: INFO)'
    )
    parser_run.set_defaults(func=cmd_run)

    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 1

    return args.func(args)


if __name__ == '__main__':
    sys.exit(main())
