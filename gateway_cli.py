import argparse
import json
import sys
from typing import List, Optional

import httpx


DEFAULT_API_BASE = "http://127.0.0.1:3001"


def _join_url(base: str, path: str) -> str:
    return base.rstrip("/") + path


def _print_models(models: list) -> None:
    if not models:
        print("No models configured.")
        return
    for model in models:
        premium = " [premium]" if model.get("is_premium") else ""
        print(f"{model.get('model_key')}  ({model.get('provider')}) {model.get('display_name') or ''}{premium}")


def _stream_chat(client: httpx.Client, base: str, payload: dict, user_id: Optional[str], timeout: float) -> int:
    headers = {"Accept": "text/event-stream"}
    if user_id:
        headers["X-User-Id"] = user_id
    with client.stream("POST", _join_url(base, "/chat"), json=payload, headers=headers, timeout=timeout) as resp:
        if resp.status_code >= 400:
            resp.read()
            print(f"Chat request failed: HTTP {resp.status_code} {resp.text}")
            return 1
        exit_code = 0
        for line in resp.iter_lines():
            if not line.startswith("data:"):
                continue
            data = line[5:].strip()
            if data == "[DONE]":
                break
            try:
                event = json.loads(data)
            except json.JSONDecodeError:
                continue
            if "error" in event:
                print(f"\nError: {event['error']}", file=sys.stderr)
                exit_code = 1
                continue
            for choice in event.get("choices") or []:
                piece = (choice.get("delta") or {}).get("content")
                if piece:
                    sys.stdout.write(piece)
                    sys.stdout.flush()
        print()
    return exit_code


def run_chat(args: argparse.Namespace) -> int:
    base = args.base_url or DEFAULT_API_BASE
    messages = []
    if args.system:
        messages.append({"role": "system", "content": args.system})
    messages.append({"role": "user", "content": " ".join(args.prompt)})
    payload = {"model": args.model, "messages": messages}
    if args.temperature is not None:
        payload["temperature"] = args.temperature
    if args.max_tokens:
        payload["max_tokens"] = args.max_tokens
    if args.search:
        payload["search"] = {"mode": args.search}
    try:
        with httpx.Client() as client:
            return _stream_chat(client, base, payload, args.user, args.timeout)
    except httpx.HTTPError as exc:
        print(f"Chat request failed: {exc}")
        return 1


def run_models(args: argparse.Namespace) -> int:
    base = args.base_url or DEFAULT_API_BASE
    with httpx.Client() as client:
        resp = client.get(_join_url(base, "/models"), timeout=10)
        if resp.status_code >= 400:
            print(f"Failed to fetch models: HTTP {resp.status_code}")
            return 1
        _print_models(resp.json().get("models") or [])
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Chat gateway CLI")
    parser.add_argument("--base-url", default=DEFAULT_API_BASE, help="Gateway base URL")
    subparsers = parser.add_subparsers(dest="command")

    chat = subparsers.add_parser("chat", help="Stream a reply from the gateway")
    chat.add_argument("--model", required=True, help="Model key, e.g. basic:gpt-4o-mini")
    chat.add_argument("--system", help="Optional system prompt")
    chat.add_argument("--temperature", type=float, default=None)
    chat.add_argument("--max-tokens", type=int, default=None)
    chat.add_argument("--search", choices=["auto", "always", "off"], default=None, help="Web search directive")
    chat.add_argument("--user", help="Sent as X-User-Id")
    chat.add_argument("--timeout", type=float, default=120.0, help="Max seconds to wait for the stream")
    chat.add_argument("prompt", nargs="+", help="User message")

    subparsers.add_parser("models", help="List enabled models")

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.command == "chat":
        return run_chat(args)
    if args.command == "models":
        return run_models(args)
    parser.print_help()
    return 1


if __name__ == "__main__":
    sys.exit(main())
