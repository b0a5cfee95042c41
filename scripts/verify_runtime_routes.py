import json
import os

import httpx

# 1x1 transparent PNG
_PIXEL_PNG = bytes.fromhex(
    "89504e470d0a1a0a0000000d4948445200000001000000010806000000"
    "1f15c4890000000d49444154789c6360000002000001e221bc330000000049454e44ae426082"
)


def main() -> int:
    base_url = os.getenv("VERIFY_BASE_URL", "http://127.0.0.1:8000").rstrip("/")
    api_key = os.getenv("VERIFY_API_KEY", "dev-key")
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
        print(f"[INFO] /version status={version.status_code} X-Imagehost-Version={version.headers.get('X-Imagehost-Version')}")
        if version.status_code == 200:
            print(f"[OK] version payload: {json.dumps(version.json(), sort_keys=True)}")
        else:
            print("[WARN] /version missing. You may be running an older server process.")

        upload = client.post(
            "/v1/images",
            files={"file": ("pixel.png", _PIXEL_PNG, "image/png")},
            headers={"X-API-Key": api_key},
        )
        print(f"[INFO] POST /v1/images status={upload.status_code}")
        if upload.status_code != 201:
            print(f"[FAIL] image upload failed: {upload.text}")
            return 2
        short_code = upload.json()["short_code"]

        resolved = client.get(f"/v1/images/{short_code}")
        stats = client.get(f"/v1/images/{short_code}/stats")
        print(f"[INFO] resolve status={resolved.status_code} stats status={stats.status_code}")
        if resolved.status_code != 200 or stats.status_code != 200:
            print("[FAIL] short code did not resolve.")
            return 3
        if stats.json()["total_visits"] < 1:
            print("[FAIL] visit was not recorded.")
            return 3

        print(f"[OK] {short_code} resolves to {resolved.json()['asset_url']}")
        return 0


if __name__ == "__main__":
    raise SystemExit(main())
