# =============================================================================
# Art Docent - Catalog Build Script
# =============================================================================
# One-time utility that embeds every reference image in a directory with the
# configured preprocessor and embedding model and writes the catalog index
# used at recognition time.  The file stem of each image becomes its
# artwork identifier.
#
# Usage:
#   python3 scripts/build_catalog.py --images data/reference_images
#
# Output:
#   data/art_index.json     {"<id>": [f0, f1, ...]}
#   data/art_metadata.json  metadata skeleton (only written if missing)
# =============================================================================

import argparse
import json
import logging
import os
import sys
import time

# Allow running as a plain script from the repository root
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from config import get_config  # noqa: E402
from recognition.catalog import write_index  # noqa: E402
from recognition.embedding import EmbeddingModel  # noqa: E402
from recognition.preprocess import ImagePreprocessor, open_image  # noqa: E402
from shared.errors import DocentError  # noqa: E402
from shared.schemas import ArtworkMetadata  # noqa: E402

_IMAGE_EXTENSIONS = (".jpg", ".jpeg", ".png", ".bmp", ".webp")


def build_catalog(image_dir: str, index_path: str, metadata_path: str, config) -> int:
    """
    Embed all images under ``image_dir`` and write the catalog files.

    Args:
        image_dir:     Directory containing one reference image per artwork.
        index_path:    Output path of the embedding index.
        metadata_path: Output path of the metadata skeleton.
        config:        Config describing the model variant.

    Returns:
        Number of artworks written.
    """
    filenames = sorted(
        name for name in os.listdir(image_dir)
        if name.lower().endswith(_IMAGE_EXTENSIONS)
    )
    if not filenames:
        print(f"No images found in {image_dir}/.")
        return 0

    preprocessor = ImagePreprocessor.from_config(config)
    vectors = {}
    t0 = time.time()

    with EmbeddingModel.from_config(config) as model:
        for name in filenames:
            identifier = os.path.splitext(name)[0]
            try:
                image = open_image(os.path.join(image_dir, name))
                vectors[identifier] = model.infer(preprocessor(image))
            except DocentError as exc:
                print(f"  skipped {name}: [{exc.code}] {exc}")
                continue
            print(f"  embedded {identifier}")

    write_index(index_path, vectors)
    print(f"Saved index: {index_path} ({len(vectors)} artworks, {time.time() - t0:.1f}s)")

    if not os.path.exists(metadata_path):
        skeleton = {identifier: ArtworkMetadata(title=identifier).model_dump() for identifier in vectors}
        os.makedirs(os.path.dirname(metadata_path) or ".", exist_ok=True)
        with open(metadata_path, "w", encoding="utf-8") as f:
            json.dump(skeleton, f, indent=2, ensure_ascii=False)
        print(f"Saved metadata skeleton: {metadata_path}")

    return len(vectors)


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Build the artwork embedding catalog")
    parser.add_argument("--images", required=True, help="Directory of reference images")
    parser.add_argument("--index", default=None, help="Output index path (default: config)")
    parser.add_argument("--metadata", default=None, help="Output metadata path (default: config)")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
        datefmt="%H:%M:%S",
    )

    cfg = get_config()
    build_catalog(
        args.images,
        args.index or cfg.catalog_index_path,
        args.metadata or cfg.catalog_metadata_path,
        cfg,
    )
