# =============================================================================
# Station Inference - Client Entry Point
# =============================================================================
# Sends one prompt (text, image and/or audio, or an OCR request) to a running
# server and prints the answer as it streams in.
# =============================================================================

import argparse
import logging
import sys

import requests

from client.stream_client import ChunkEvent, InferenceClient, MetadataEvent, collect_events
from config import get_config


def _echo(events):
    for event in events:
        if isinstance(event, MetadataEvent) and event.message:
            sys.stderr.write(event.message)
        elif isinstance(event, ChunkEvent):
            sys.stdout.write(event.data)
            sys.stdout.flush()
        yield event


def main():
    """Parse CLI arguments, submit the request and stream the answer to stdout."""
    config = get_config()
    parser = argparse.ArgumentParser(
        description="Station Inference — streaming client",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument("--server", type=str, default=config.server_url, help="Server base URL")
    parser.add_argument("--text", type=str, default=None, help="Prompt text")
    parser.add_argument("--image", type=str, default=None, help="Image file to attach")
    parser.add_argument("--image-url", type=str, default=None, help="Image URL to attach instead of a file")
    parser.add_argument("--audio", type=str, default=None, help="Audio file to attach")
    parser.add_argument("--ocr", action="store_true", help="OCR the image and combine its text with --text")
    parser.add_argument("--wait", type=int, default=0, help="Seconds to wait for the server to become ready")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.WARNING,
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
        datefmt="%H:%M:%S",
    )

    client = InferenceClient(args.server)
    if args.wait and not client.wait_for_server(timeout=args.wait, poll_interval=2.0):
        sys.exit(1)

    if args.ocr:
        if not args.image or not args.text:
            parser.error("--ocr needs both --image and --text")
        events = client.ocr_generate(args.image, args.text)
    else:
        events = client.generate(
            text=args.text,
            image_path=args.image,
            audio_path=args.audio,
            image_url=args.image_url,
        )

    try:
        result = collect_events(_echo(events))
    except requests.RequestException as exc:
        print(f"Request failed: {exc}", file=sys.stderr)
        sys.exit(1)
    print()

    if result.error:
        print(f"Generation failed: {result.error}", file=sys.stderr)
        sys.exit(1)
    if not result.complete:
        print("Stream ended before the response was complete.", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
