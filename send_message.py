# send_message.py
"""
Manual client for a running Talky API.

Usage (from project root, with `talky-server` running):
    python send_message.py -s s1 entrenar
    python send_message.py -s s1 "Los lunes el restaurante está cerrado"
    python send_message.py -s s1 --voice samples/nota.ogg --lang es
    python send_message.py --record default
    python send_message.py --record default --set-prompt prompt.txt

Each positional argument is sent as its own message, in order, so a whole
training round can be replayed from the shell.
"""

import argparse
import base64
import json
import mimetypes
from pathlib import Path
from typing import Any, Dict, List, Optional

import requests

DEFAULT_API_BASE = "http://127.0.0.1:8000"

# Keep in sync with VOICE_NOTE_MAX_BYTES in talky/audio/service.py
VOICE_NOTE_MAX_BYTES = 10 * 1024 * 1024

# mimetypes does not know these everywhere
VOICE_SUFFIXES = {".opus": "audio/ogg", ".m4a": "audio/mp4", ".oga": "audio/ogg"}


class TalkyClient:

    def __init__(self, api_base: str = DEFAULT_API_BASE, timeout: float = 120.0) -> None:
        self.api_base = api_base.rstrip("/")
        self.timeout = timeout
        self.http = requests.Session()

    def _call(self, method: str, path: str, **kwargs: Any) -> Dict[str, Any]:
        resp = self.http.request(method, f"{self.api_base}{path}", timeout=self.timeout, **kwargs)
        try:
            body = resp.json()
        except ValueError:
            body = {"raw": resp.text}
        if not resp.ok:
            raise RuntimeError(f"{method} {path} -> {resp.status_code}: {json.dumps(body, ensure_ascii=False)}")
        return body

    def health(self) -> Dict[str, Any]:
        return self._call("GET", "/health")

    def send_text(self, session_id: str, text: str, user_id: Optional[str] = None) -> Dict[str, Any]:
        return self._call("POST", "/message", json={"session_id": session_id, "text": text, "user_id": user_id})

    def send_voice(
        self,
        session_id: str,
        path: Path,
        language: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        payload = path.read_bytes()
        if not payload:
            raise ValueError(f"{path} is empty")
        if len(payload) > VOICE_NOTE_MAX_BYTES:
            raise ValueError(f"{path} is {len(payload)} bytes; the server accepts at most {VOICE_NOTE_MAX_BYTES}")
        mime = VOICE_SUFFIXES.get(path.suffix.lower()) or mimetypes.guess_type(path.name)[0] or "audio/wav"
        return self._call("POST", "/message", json={
            "session_id": session_id,
            "audio_base64": base64.b64encode(payload).decode("ascii"),
            "mime_type": mime,
            "language": language,
            "user_id": user_id,
        })

    def record(self, user_id: str) -> Dict[str, Any]:
        return self._call("GET", f"/records/{user_id}")

    def set_prompt(self, user_id: str, prompt: str) -> Dict[str, Any]:
        return self._call("PUT", f"/records/{user_id}/prompt", json={"prompt": prompt})


def show_turn(data: Dict[str, Any]) -> None:
    if not data.get("handled"):
        print(f"(not handled, mode={data.get('mode')})")
        return
    for msg in data.get("messages") or []:
        print(f"Bot> {msg.get('text')}")
    print(f"     mode={data.get('mode')} latency_ms={data.get('latency_ms')}\n")


def show_record(data: Dict[str, Any]) -> None:
    print(f"[record] user={data.get('user_id')} pending={len(data.get('pending_modifications') or [])} "
          f"history={len(data.get('history') or [])} flush_failures={data.get('flush_failures')}")
    for mod in data.get("pending_modifications") or []:
        print(f"  * {mod.get('type')}: {mod.get('description')}")
    print(data.get("prompt") or "(empty prompt)")


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Send messages to a running Talky API.")
    parser.add_argument("messages", nargs="*", help="Text messages, sent one after another.")
    parser.add_argument("--session", "-s", default="manual", help="Session id (default: manual).")
    parser.add_argument("--voice", "-v", action="append", default=[], help="Voice-note file; repeatable.")
    parser.add_argument("--lang", default=None, help="STT language hint, e.g. 'es'.")
    parser.add_argument("--user", default=None, help="Prompt owner; server default if omitted.")
    parser.add_argument("--record", metavar="USER_ID", default=None, help="Print the stored record afterwards.")
    parser.add_argument("--set-prompt", metavar="FILE", default=None,
                        help="With --record: replace that user's prompt with FILE's contents first.")
    parser.add_argument("--api-base", default=DEFAULT_API_BASE, help=f"API base URL (default: {DEFAULT_API_BASE})")
    args = parser.parse_args(argv)

    client = TalkyClient(args.api_base)
    try:
        print(f"[health] {client.health()}")
        if args.record and args.set_prompt:
            client.set_prompt(args.record, Path(args.set_prompt).read_text(encoding="utf-8"))
        for text in args.messages:
            print(f"You> {text}")
            show_turn(client.send_text(args.session, text, user_id=args.user))
        for voice in args.voice:
            print(f"You> [voice note {voice}]")
            show_turn(client.send_voice(args.session, Path(voice), language=args.lang, user_id=args.user))
        if args.record:
            show_record(client.record(args.record))
    except (requests.RequestException, RuntimeError, ValueError, OSError) as e:
        print(f"[fatal] {e}")
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
