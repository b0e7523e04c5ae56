import argparse
import os
import sys

import httpx

from orderhub.client import DEFAULT_CHUNK_SIZE, ChunkedUploadManager, UploadProgress, format_file_size


def _print_progress(progress: UploadProgress) -> None:
    print(
        f"[INFO] {progress.uploaded_chunks}/{progress.total_chunks} chunks "
        f"({progress.percentage}%, {format_file_size(progress.uploaded_bytes)} of {format_file_size(progress.total_bytes)})"
    )


def main() -> int:
    parser = argparse.ArgumentParser(description="Upload a local file to orderhub in resumable chunks.")
    parser.add_argument("path", help="File to upload")
    parser.add_argument("--target-type", choices=["order_document", "product_document"], default="order_document")
    parser.add_argument("--target-id", type=int, required=True)
    parser.add_argument("--base-url", default=os.getenv("ORDERHUB_BASE_URL", "http://127.0.0.1:8000"))
    parser.add_argument("--api-key", default=os.getenv("ORDERHUB_API_KEY", "dev-key"))
    parser.add_argument("--chunk-size", type=int, default=DEFAULT_CHUNK_SIZE)
    parser.add_argument("--max-retries", type=int, default=3)
    args = parser.parse_args()

    with httpx.Client(base_url=args.base_url.rstrip("/"), headers={"X-API-Key": args.api_key}, timeout=60.0) as client:
        manager = ChunkedUploadManager(
            client,
            args.path,
            args.target_type,
            args.target_id,
            chunk_size=args.chunk_size,
            max_retries=args.max_retries,
        )
        manager.on_progress = _print_progress
        print(f"Uploading {args.path} ({format_file_size(manager.file_size)}) in {manager.total_chunks} chunks")
        try:
            result = manager.start()
        except Exception as exc:
            print(f"[FAIL] upload {manager.upload_id or '-'} failed: {exc}", file=sys.stderr)
            return 1

    print(f"[OK] stored at {result['file_path']} ({result['url']})")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
