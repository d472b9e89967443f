import argparse
import hashlib
import json
import os
import time
from concurrent.futures import ThreadPoolExecutor, as_completed

import httpx


def _read_chunk(path: str, index: int, chunk_size: int) -> bytes:
    with open(path, "rb") as f:
        f.seek(index * chunk_size)
        return f.read(chunk_size)


def _upload_chunk(
    client: httpx.Client, upload_id: str, path: str, index: int, chunk_size: int, retries: int
) -> float:
    chunk = _read_chunk(path, index, chunk_size)
    digest = hashlib.sha256(chunk).hexdigest()
    for attempt in range(retries + 1):
        t0 = time.perf_counter()
        try:
            resp = client.put(
                f"/v1/uploads/{upload_id}/chunks/{index}",
                content=chunk,
                headers={"X-Chunk-SHA256": digest},
                timeout=120.0,
            )
            if resp.status_code < 500:
                resp.raise_for_status()
                return (time.perf_counter() - t0) * 1000
        except httpx.TransportError:
            if attempt == retries:
                raise
        time.sleep(min(2**attempt, 10))
    raise RuntimeError(f"chunk {index} failed after {retries} retries")


def main() -> int:
    parser = argparse.ArgumentParser(description="Upload a media file in chunks and assemble it.")
    parser.add_argument("path", help="File to upload")
    parser.add_argument("--base-url", default="http://127.0.0.1:8000", help="API base URL")
    parser.add_argument("--chunk-size-bytes", type=int, default=5 * 1024 * 1024, help="Chunk size in bytes")
    parser.add_argument("--workers", type=int, default=4, help="Parallel chunk uploads")
    parser.add_argument("--retries", type=int, default=3, help="Retries per chunk on 5xx or transport errors")
    parser.add_argument("--title", default=None)
    parser.add_argument("--media-type", default="long")
    parser.add_argument("--username", default=None)
    args = parser.parse_args()

    file_size = os.path.getsize(args.path)
    total_chunks = max(1, -(-file_size // args.chunk_size_bytes))
    started = time.perf_counter()

    with httpx.Client(base_url=args.base_url.rstrip("/")) as client:
        init = client.post(
            "/v1/uploads/init",
            json={"file_name": os.path.basename(args.path), "total_chunks": total_chunks},
            timeout=30.0,
        )
        init.raise_for_status()
        upload_id = init.json()["upload_id"]
        print(f"upload_id={upload_id} chunks={total_chunks}")

        latencies_ms: list[float] = []
        with ThreadPoolExecutor(max_workers=args.workers) as pool:
            futures = [
                pool.submit(_upload_chunk, client, upload_id, args.path, idx, args.chunk_size_bytes, args.retries)
                for idx in range(total_chunks)
            ]
            for fut in as_completed(futures):
                latencies_ms.append(fut.result())

        assemble = client.post(
            f"/v1/uploads/{upload_id}/assemble",
            json={
                "total_chunks": total_chunks,
                "title": args.title,
                "media_type": args.media_type,
                "username": args.username,
            },
            timeout=600.0,
        )
        if assemble.status_code == 409 and assemble.json().get("error_code") == "incomplete_upload":
            print(f"[FAIL] missing chunk {assemble.json().get('missing_chunk_index')}")
            return 1
        assemble.raise_for_status()

    summary = {
        **assemble.json(),
        "elapsed_seconds": round(time.perf_counter() - started, 3),
        "chunk_latency_ms_avg": round(sum(latencies_ms) / len(latencies_ms), 3) if latencies_ms else 0.0,
    }
    print(json.dumps(summary, indent=2, sort_keys=True))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
