import json
import os
import uuid

import httpx


def main() -> int:
    base_url = os.getenv("VERIFY_BASE_URL", "http://127.0.0.1:8000").rstrip("/")
    print(f"Checking runtime at {base_url}")
    with httpx.Client(base_url=base_url, timeout=10.0) as client:
        try:
            health = client.get("/health")
        except Exception as exc:
            print(f"[FAIL] Could not connect to service: {exc}")
            return 1

        print(f"[INFO] /health status={health.status_code}")
        if health.status_code != 200:
            print("[FAIL] /health is not healthy.")
            return 1

        version = client.get("/version")
        print(f"[INFO] /version status={version.status_code} X-Media-App-Version={version.headers.get('X-Media-App-Version')}")
        if version.status_code == 200:
            print(f"[OK] version payload: {json.dumps(version.json(), sort_keys=True)}")

        upload_id = f"verify-{uuid.uuid4().hex}.bin"
        for idx, chunk in enumerate((b"0123456789", b"abcdefghij")):
            put = client.put(f"/v1/uploads/{upload_id}/chunks/{idx}", content=chunk)
            if put.status_code != 202:
                print(f"[FAIL] chunk {idx} upload status={put.status_code}: {put.text}")
                return 2

        assemble = client.post(f"/v1/uploads/{upload_id}/assemble", json={"total_chunks": 2, "title": "verify"})
        print(f"[INFO] assemble status={assemble.status_code}")
        if assemble.status_code != 200:
            print(f"[FAIL] assemble failed: {assemble.text}")
            return 2

        partial = client.get(f"/v1/media/{upload_id}/stream", headers={"Range": "bytes=8-11"})
        print(f"[INFO] stream status={partial.status_code} Content-Range={partial.headers.get('Content-Range')}")
        if partial.status_code != 206 or partial.content != b"89ab":
            print("[FAIL] range streaming returned unexpected payload.")
            return 3

        print("[OK] upload, assembly and range streaming are working.")
        return 0


if __name__ == "__main__":
    raise SystemExit(main())
