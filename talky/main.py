# talky/main.py
"""
Talky CLI: drive a training session from the terminal.

- Text in -> TrainingController -> replies printed
- "@path/to/note.ogg" sends that file as a voice note
- --voice-input : press ENTER to record a voice note from the microphone
- --session / --user : pick the session id and prompt owner
- --show-record : print the stored prompt record before exiting

Type "entrenar" to start training, "salir" to stop, "exit"/"quit" to leave.
"""

from __future__ import annotations

import argparse
import time
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

import numpy as np

from talky.audio.service import encode_wav
from talky.config.settings import load_settings
from talky.core.messages import InboundMessage, TurnResult
from talky.core.training import TrainingController

# Only needed for --voice-input
try:
    import sounddevice as sd
except (ImportError, OSError):
    sd = None  # type: ignore


MIC_SAMPLE_RATE = 16000
MIC_BLOCK_SEC = 0.2

# a note ends after this much silence, once enough speech was heard
END_OF_NOTE_SILENCE_SEC = 1.8
MIN_NOTE_SPEECH_SEC = 0.6

VOICE_FILE_TYPES = {
    ".wav": "audio/wav",
    ".mp3": "audio/mpeg",
    ".ogg": "audio/ogg",
    ".opus": "audio/ogg",
    ".webm": "audio/webm",
    ".m4a": "audio/mp4",
}


@dataclass
class SpeechGate:
    """
    Tells speech blocks from background noise by RMS level.
    The first `calibration_blocks` blocks estimate the noise floor; after that
    quiet blocks keep nudging it so a fan or street noise does not count as speech.
    """
    floor_level: float = 180.0
    margin: float = 140.0
    calibration_blocks: int = 10
    noise: float = 0.0
    seen: int = 0

    @property
    def threshold(self) -> float:
        if self.seen == 0:
            return self.floor_level + self.margin
        return max(self.floor_level, self.noise + self.margin)

    def is_speech(self, block: np.ndarray) -> bool:
        level = float(np.sqrt(np.mean(block.astype("float32") ** 2))) if block.size else 0.0
        if self.seen < self.calibration_blocks:
            self.noise = (self.noise * self.seen + level) / (self.seen + 1)
            self.seen += 1
            return level >= self.threshold
        speech = level >= self.threshold
        if not speech:
            self.noise = 0.95 * self.noise + 0.05 * level
        return speech


def record_voice_note(device: Optional[int], max_seconds: float = 30.0) -> Optional[bytes]:
    """
    Record from the microphone until speech is followed by a pause, or
    max_seconds pass. Returns WAV bytes, or None when no speech was heard.
    """
    if sd is None:
        raise RuntimeError(
            "--voice-input needs the 'sounddevice' package (pip install 'talky-trainer[voice]') "
            "and a working PortAudio installation."
        )

    block_frames = max(1, int(MIC_BLOCK_SEC * MIC_SAMPLE_RATE))
    gate = SpeechGate()
    blocks: List[np.ndarray] = []
    speech_sec = 0.0
    silent_for = 0.0
    deadline = time.monotonic() + max_seconds

    try:
        with sd.InputStream(samplerate=MIC_SAMPLE_RATE, channels=1, dtype="int16", device=device) as stream:
            while time.monotonic() < deadline:
                block, _ = stream.read(block_frames)
                blocks.append(block.copy())
                if gate.is_speech(block.reshape(-1)):
                    speech_sec += MIC_BLOCK_SEC
                    silent_for = 0.0
                else:
                    silent_for += MIC_BLOCK_SEC
                if speech_sec >= MIN_NOTE_SPEECH_SEC and silent_for >= END_OF_NOTE_SILENCE_SEC:
                    break
            else:
                print(f"[voice] stopped after {max_seconds:.0f}s")
    except Exception as e:
        raise RuntimeError(f"Microphone recording failed: {e}") from e

    if speech_sec < MIN_NOTE_SPEECH_SEC:
        print("[voice] no speech heard, try again")
        return None
    return encode_wav(np.concatenate(blocks, axis=0), MIC_SAMPLE_RATE)


def load_voice_note(path: Path) -> InboundMessage:
    if not path.is_file():
        raise FileNotFoundError(f"Audio file not found: {path}")
    mime = VOICE_FILE_TYPES.get(path.suffix.lower(), "application/octet-stream")
    return InboundMessage(audio_bytes=path.read_bytes(), mime_type=mime)


def print_turn(result: TurnResult) -> None:
    if not result.handled:
        print("(sin respuesta: escribe 'entrenar' para iniciar el modo de entrenamiento)\n")
        return
    for msg in result.messages:
        print(f"Bot: {msg.text}\n")


def print_record(controller: TrainingController, user_id: str) -> None:
    record = controller.repository.get_record(user_id)
    print(f"--- record user_id={record.user_id} ---")
    print(record.prompt or "(prompt vacío)")
    print(f"pending={len(record.pending_modifications)} history={len(record.history)} "
          f"flush_failures={record.flush_failures}")


def read_turn(args: argparse.Namespace) -> Optional[InboundMessage]:
    """
    Next message from the terminal. Returns None for "nothing to send";
    raises EOFError when the user wants to leave.
    """
    prompt = "[ENTER graba, texto para escribir, 'q' sale] " if args.voice_input else "Tú: "
    line = input(prompt).strip()

    if line.lower() in {"exit", "quit", "q"}:
        raise EOFError
    if args.voice_input and not line:
        wav = record_voice_note(args.device, max_seconds=args.max_record)
        return InboundMessage(audio_bytes=wav, mime_type="audio/wav") if wav else None
    if not line:
        return None
    if line.startswith("@"):
        try:
            return load_voice_note(Path(line[1:].strip()).expanduser())
        except OSError as e:
            print(f"[voice] {e}")
            return None
    return InboundMessage(text=line)


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(description="Talky CLI: train a chatbot prompt conversationally.")
    p.add_argument("--session", default="cli", help="Session id used for this terminal.")
    p.add_argument("--user", default=None, help="Prompt owner (defaults to TALKY_USER_ID).")
    p.add_argument("--voice-input", action="store_true", help="Record voice notes from the microphone.")
    p.add_argument("--device", type=int, default=None, help="Microphone device index (sounddevice).")
    p.add_argument("--max-record", type=float, default=30.0, help="Max voice recording seconds.")
    p.add_argument("--show-record", action="store_true", help="Print the stored prompt record on exit.")
    return p


def main(argv: Optional[list[str]] = None) -> None:
    args = build_parser().parse_args(argv)
    settings = load_settings()
    controller = TrainingController.from_settings(settings)
    user_id = args.user or settings.default_user_id

    if args.voice_input and sd is None:
        raise SystemExit("--voice-input needs: pip install 'talky-trainer[voice]'")

    print(f"Talky CLI (session={args.session}, user={user_id}). Type 'exit' to quit.\n")

    try:
        while True:
            try:
                inbound = read_turn(args)
            except (EOFError, KeyboardInterrupt):
                print("\n[bye]")
                break
            if inbound is not None:
                print_turn(controller.handle_message(args.session, inbound, user_id=user_id))
    finally:
        if args.show_record:
            print_record(controller, user_id)


if __name__ == "__main__":
    main()
