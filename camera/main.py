# =============================================================================
# Art Docent - Camera CLI
# =============================================================================
# Entry point for running the docent locally: capture a frame from the
# network camera (or read an image file), recognize the artwork on-device,
# print the match, then optionally answer questions about it interactively
# with streamed tokens.
# =============================================================================

import argparse
import logging
import sys

import requests

from config import get_config
from camera.snapshot import SnapshotClient
from generation.session import GenerationSession
from generation.stream import TokenStream
from recognition.context import RecognitionContext
from recognition.pipeline import RecognitionPipeline
from recognition.preprocess import open_image
from shared.errors import DocentError, GenerationTimeout, InvalidImage

logger = logging.getLogger(__name__)


def _print_outcome(outcome) -> None:
    print("\n" + "=" * 60)
    if outcome.matched:
        record = outcome.match.record
        print(f"  Match      : {record.identifier} (score {outcome.match.score:.4f})")
        if record.metadata is not None:
            meta = record.metadata
            for label, value in (
                ("Title", meta.title), ("Artist", meta.author), ("Date", meta.date),
                ("Technique", meta.technique), ("School", meta.school),
            ):
                if value:
                    print(f"  {label:<11}: {value}")
        else:
            print("  (no metadata in catalog)")
    elif outcome.error is not None:
        print(f"  Failed     : [{outcome.error_code}] {outcome.error}")
    else:
        print("  No matching artwork found.")
    for identifier, score in outcome.candidates:
        print(f"    candidate {identifier:<30} {score:.4f}")
    print("=" * 60 + "\n")


def _chat(session: GenerationSession, config) -> None:
    """Interactive question loop; an empty line exits."""
    while True:
        try:
            question = input("Question> ").strip()
        except EOFError:
            break
        if not question:
            break

        try:
            with TokenStream(
                session, question,
                timeout=config.generation_timeout_seconds,
                max_queue=config.stream_queue_size,
            ) as stream:
                for piece in stream:
                    print(piece, end="", flush=True)
        except GenerationTimeout:
            print(f"\n[took longer than {config.generation_timeout_seconds:.0f}s]")
            continue
        except DocentError as exc:
            print(f"\n[model error: {exc}]")
            continue

        stats = session.stats
        print(f"\n  ({stats.total_tokens} tokens, {stats.tokens_per_second:.2f} tok/s)\n")


def main():
    """CLI entry point for the camera client."""
    parser = argparse.ArgumentParser(
        description="Art Docent - recognize an artwork and ask about it",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument("--image", type=str, default=None, help="Image file to recognize instead of a snapshot")
    parser.add_argument("--camera-url", type=str, default=None, help="Camera base URL (overrides config)")
    parser.add_argument("--top-k", type=int, default=None, help="Print the top-K candidates")
    parser.add_argument("--chat", action="store_true", help="Ask questions about the matched artwork")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
        datefmt="%H:%M:%S",
    )

    config = get_config()
    if args.camera_url is not None:
        config.camera_url = args.camera_url
    top_k = config.top_k if args.top_k is None else args.top_k

    with RecognitionContext.from_config(config) as context:
        if not context.is_ready():
            logger.error("Recognizer not ready: %s", context.load_error)
            sys.exit(1)

        try:
            if args.image is not None:
                image = open_image(args.image)
            else:
                client = SnapshotClient(config.camera_url)
                try:
                    if not client.is_online():
                        logger.error("Camera at %s is not reachable.", config.camera_url)
                        sys.exit(1)
                    image = client.fetch_snapshot()
                finally:
                    client.close()
        except InvalidImage as exc:
            logger.error("Cannot use the captured image: %s", exc)
            sys.exit(1)
        except requests.exceptions.RequestException as exc:
            logger.error("Snapshot failed: %s", exc)
            sys.exit(1)

        pipeline = RecognitionPipeline(context, threshold=config.match_threshold, top_k=top_k)
        outcome = pipeline.recognize(image)
        pipeline.close()
        _print_outcome(outcome)

        if not args.chat or not outcome.matched:
            return

        with GenerationSession.from_config(config) as session:
            if not session.load_model(config.llm_model_path) or not session.init_session():
                logger.error("Docent model could not be started.")
                sys.exit(1)
            session.set_artwork(outcome.match.record.metadata)
            if not session.decode_system_prompt():
                logger.error("Failed to decode the system prompt.")
                sys.exit(1)
            _chat(session, config)


if __name__ == "__main__":
    main()
