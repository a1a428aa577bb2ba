"""
Main entry point for the VBot voice console.
"""

import argparse
import asyncio
import logging
import sys
from dataclasses import replace

from vbot_voice.config import GEMINI_VOICES, get_settings
from vbot_voice.errors import DeviceError, DeviceErrorKind
from vbot_voice.models.chat_client import ChatClient, Message, Role
from vbot_voice.orchestrator.live_controller import LiveSessionController
from vbot_voice.orchestrator.turn_controller import TurnConversationController, TurnControllerConfig
from vbot_voice.voice.audio_capture import AudioCapture, AudioCaptureConfig
from vbot_voice.voice.audio_playback import AudioPlayback, AudioPlaybackConfig
from vbot_voice.voice.live_client import LiveClient, LiveConfig
from vbot_voice.voice.stt import HttpTranscriptionClient, STTConfig
from vbot_voice.voice.tts import HttpSynthesisClient, TTSConfig


def setup_logging() -> None:
    """Configure application logging."""
    settings = get_settings()
    logging.basicConfig(
        level=getattr(logging, settings.log_level),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )


def build_parser() -> argparse.ArgumentParser:
    settings = get_settings()
    parser = argparse.ArgumentParser(prog="vbot-voice", description="Talk to VBot from the terminal")
    parser.add_argument(
        "--mode",
        choices=["turn", "live"],
        default="turn",
        help="Push-to-talk turns or a live duplex session",
    )
    parser.add_argument(
        "--voice",
        choices=sorted(GEMINI_VOICES),
        default=settings.voice,
        help="Prebuilt voice for replies (env: VBOT_VOICE)",
    )
    parser.add_argument(
        "--base-url",
        default=settings.api_base_url,
        help="Base URL of the speech routes (env: VBOT_API_BASE_URL)",
    )
    parser.add_argument(
        "--chat-url",
        default=settings.chat_url,
        help="Streaming chat endpoint (env: VBOT_CHAT_URL)",
    )
    parser.add_argument(
        "--system-instruction",
        default=settings.system_instruction,
        help="System instruction for live mode (env: VBOT_SYSTEM_INSTRUCTION)",
    )
    return parser


async def _get_input(prompt: str) -> str:
    try:
        return await asyncio.to_thread(input, prompt)
    except EOFError:
        return "q"


def _capture() -> AudioCapture:
    settings = get_settings()
    return AudioCapture(
        AudioCaptureConfig(sample_rate=settings.capture_sample_rate, chunk_ms=settings.capture_chunk_ms)
    )


async def run_turn(args: argparse.Namespace) -> None:
    """Push-to-talk loop: Enter starts, Enter stops, 'c' cancels, 'q' quits."""
    settings = get_settings()
    stt = HttpTranscriptionClient(replace(STTConfig.from_settings(), base_url=args.base_url))
    tts = HttpSynthesisClient(replace(TTSConfig.from_settings(), base_url=args.base_url))
    chat = ChatClient(args.chat_url)

    def _print_reply(messages: list[Message]) -> None:
        if messages and messages[-1].role is Role.ASSISTANT:
            print(f"VBot: {messages[-1].content}")

    controller = TurnConversationController(
        capture=_capture(),
        playback=AudioPlayback(AudioPlaybackConfig(pcm_sample_rate=settings.live_output_sample_rate)),
        stt=stt,
        chat=chat,
        tts=tts,
        config=TurnControllerConfig.from_settings(voice=args.voice),
        on_messages_update=_print_reply,
    )

    controller.signals.state.subscribe(lambda s: print(f"[{s.value}]"))
    controller.signals.user_transcript.subscribe(lambda t: t and print(f"You: {t}"))
    controller.signals.error.subscribe(lambda e: e and print(f"Error: {e}"))
    controller.signals.notice.subscribe(lambda n: n and print(n))

    try:
        if not controller.supported:
            print(DeviceError(kind=DeviceErrorKind.UNSUPPORTED))
            return
        print("Press Enter to talk, Enter again to send. 'c' cancels, 'q' quits.")
        while True:
            line = (await _get_input("")).strip().lower()
            if line == "q":
                break
            if line == "c":
                controller.cancel_conversation()
                continue
            if controller.is_recording:
                await controller.stop_listening()
            else:
                await controller.start_listening()
    finally:
        await controller.aclose()
        await stt.close()
        await chat.close()
        await tts.close()


async def run_live(args: argparse.Namespace) -> None:
    """Live loop: Enter toggles the mic, any other line is sent as text, 'q' disconnects."""
    config = LiveConfig.from_settings(voice=args.voice, system_instruction=args.system_instruction)
    controller = LiveSessionController(
        client_factory=lambda: LiveClient(config),
        capture=_capture(),
        playback=AudioPlayback(AudioPlaybackConfig(pcm_sample_rate=config.output_sample_rate)),
        on_transcript=lambda text: print(f"VBot: {text}"),
    )
    controller.signals.state.subscribe(lambda s: print(f"[{s.value}]"))
    controller.signals.error.subscribe(lambda e: e and print(f"Error: {e}"))

    await controller.connect()
    if controller.error:
        return

    mic = controller.supported
    if mic:
        print("Press Enter to toggle the microphone, type to send text, 'q' to quit.")
    else:
        print(DeviceError(kind=DeviceErrorKind.UNSUPPORTED))
        print("Type to send text, 'q' to quit.")
    try:
        while True:
            line = (await _get_input("")).strip()
            if line.lower() == "q":
                break
            if line:
                controller.send_text(line)
            elif not mic:
                continue
            elif controller.is_listening:
                controller.stop_listening()
            else:
                await controller.start_listening()
    finally:
        await controller.disconnect()


async def run(argv: list[str] | None = None) -> None:
    logger = logging.getLogger(__name__)
    args = build_parser().parse_args(argv)
    logger.info(f"Starting VBot voice in {args.mode} mode (voice={args.voice})")
    if args.mode == "live":
        await run_live(args)
    else:
        await run_turn(args)


def main() -> None:
    """Main entry point for the application."""
    setup_logging()

    try:
        asyncio.run(run(sys.argv[1:]))
    except KeyboardInterrupt:
        print("\nVoice session terminated by user.")
        sys.exit(0)
    except Exception as e:
        logging.error(f"Application error: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
