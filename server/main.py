# =============================================================================
# Art Docent - Server Entry Point
# =============================================================================
# CLI entry point for starting the FastAPI server: artwork recognizer
# (embedding model + catalog) and docent LLM (llama.cpp GGUF).
# =============================================================================

import argparse
import logging

import uvicorn

from config import get_config


def main():
    """Parse CLI arguments, apply overrides, and start the server."""
    parser = argparse.ArgumentParser(
        description="Art Docent - Server (artwork recognition + docent LLM)",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument("--host", type=str, default=None, help="Server bind address")
    parser.add_argument("--port", type=int, default=None, help="Server bind port")
    parser.add_argument("--embedding-model", type=str, default=None, help="Path to the embedding model")
    parser.add_argument("--catalog", type=str, default=None, help="Path to the catalog index JSON")
    parser.add_argument("--metadata", type=str, default=None, help="Path to the catalog metadata JSON")
    parser.add_argument("--llm", type=str, default=None, help="Path to the GGUF docent model")
    parser.add_argument("--threshold", type=float, default=None, help="Match acceptance threshold")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
        datefmt="%H:%M:%S",
    )

    config = get_config()

    if args.host is not None:
        config.server_host = args.host
    if args.port is not None:
        config.server_port = args.port
    if args.embedding_model is not None:
        config.embedding_model_path = args.embedding_model
    if args.catalog is not None:
        config.catalog_index_path = args.catalog
    if args.metadata is not None:
        config.catalog_metadata_path = args.metadata
    if args.llm is not None:
        config.llm_model_path = args.llm
    if args.threshold is not None:
        config.match_threshold = args.threshold

    print("\n" + "=" * 60)
    print("  Art Docent - Server")
    print("=" * 60)
    print(f"  Embedder   : {config.embedding_model_path} ({config.embedding_backend}, {config.embedding_dim}-d)")
    print(f"  Input      : {config.image_size}px, {config.normalization}, {config.channel_layout.upper()}")
    print(f"  Catalog    : {config.catalog_index_path}")
    print(f"  Metric     : {config.similarity_metric} (threshold {config.match_threshold})")
    print(f"  LLM model  : {config.llm_model_path}")
    print(f"  Device     : {config.device}")
    print(f"  Listening  : {config.server_host}:{config.server_port}")
    print("=" * 60 + "\n")

    uvicorn.run(
        "server.app:app",
        host=config.server_host,
        port=config.server_port,
        log_level="info",
    )


if __name__ == "__main__":
    main()
