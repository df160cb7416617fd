# =============================================================================
# Station Inference - Server Entry Point
# =============================================================================
# CLI entry point for starting the FastAPI server: Gemma 3n image/audio/text
# chat model (transformers) + YOLO-style pose model (ONNX Runtime).
# =============================================================================

import argparse
import logging
import os
import sys

import uvicorn

from config import get_config


def main():
    """Parse CLI arguments, apply overrides, and start the server."""
    parser = argparse.ArgumentParser(
        description="Station Inference — local multimodal server",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument("--host", type=str, default=None, help="Server bind address")
    parser.add_argument("--port", type=int, default=None, help="Server bind port")
    parser.add_argument("--model", type=str, default=None, help="Path to the vision-language model directory")
    parser.add_argument("--pose-model", type=str, default=None, help="Path to the pose model (.onnx)")
    parser.add_argument("--uploads", type=str, default=None, help="Directory for uploaded images")
    args = parser.parse_args()

    config = get_config()

    logging.basicConfig(
        level=getattr(logging, config.log_level.upper(), logging.INFO),
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
        datefmt="%H:%M:%S",
    )

    if args.host is not None:
        config.server_host = args.host
    if args.port is not None:
        config.server_port = args.port
    if args.model is not None:
        config.vision_model_path = args.model
    if args.pose_model is not None:
        config.pose_model_path = args.pose_model
    if args.uploads is not None:
        config.uploads_dir = args.uploads

    config.refresh_derived()

    missing = [p for p in (config.vision_model_path, config.pose_model_path) if not os.path.exists(p)]
    if missing:
        for path in missing:
            logging.getLogger(__name__).critical("Model not found: %s", path)
        sys.exit(1)

    print("\n" + "=" * 60)
    print("  Station Inference — Server")
    print("=" * 60)
    print(f"  Vision model : {config.vision_model_path}")
    print(f"  Pose model   : {config.pose_model_path}")
    print(f"  Device       : {config.device} ({config.torch_dtype_str})")
    print(f"  Uploads      : {config.uploads_dir}")
    print(f"  Listening    : {config.server_host}:{config.server_port}")
    print("=" * 60 + "\n")

    uvicorn.run(
        "server.app:create_app",
        factory=True,
        host=config.server_host,
        port=config.server_port,
        log_level=config.log_level.lower(),
    )


if __name__ == "__main__":
    main()
