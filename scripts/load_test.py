import argparse
import json
import math
import os
import random
import statistics
import time
import uuid
from concurrent.futures import ThreadPoolExecutor, as_completed

import httpx

PROFILE_PRESETS = {
    "fast": {"concurrent_files": 2, "per_file_part_workers": 2},
    "balanced": {"concurrent_files": 3, "per_file_part_workers": 4},
    "max-throughput": {"concurrent_files": 4, "per_file_part_workers": 6},
}


def _build_payload(size_bytes: int) -> bytes:
    pattern = b"imagehost-load-test-"
    repeats = math.ceil(size_bytes / len(pattern))
    return (pattern * repeats)[:size_bytes]


def _split_parts(data: bytes, part_size: int) -> list[bytes]:
    return [data[i : i + part_size] for i in range(0, len(data), part_size)]


def _upload_one_file(
    client: httpx.Client,
    base_url: str,
    file_name: str,
    payload: bytes,
    mime_type: str,
    per_file_part_workers: int,
) -> dict:
    started = time.perf_counter()
    init_resp = client.post(
        f"{base_url}/v1/uploads/init",
        json={"file_name": file_name, "mime_type": mime_type, "file_size": len(payload)},
        timeout=30.0,
    )
    init_resp.raise_for_status()
    session = init_resp.json()
    upload_id = session["upload_id"]

    parts = list(enumerate(_split_parts(payload, session["part_size"]), start=1))
    # Parts may arrive in any order.
    random.shuffle(parts)
    latencies_ms: list[float] = []

    def _upload_part(part_number: int, part: bytes) -> None:
        t0 = time.perf_counter()
        resp = client.put(
            f"{base_url}/v1/uploads/{upload_id}/parts/{part_number}",
            content=part,
            headers={"Content-Length": str(len(part))},
            timeout=60.0,
        )
        resp.raise_for_status()
        latencies_ms.append((time.perf_counter() - t0) * 1000)

    with ThreadPoolExecutor(max_workers=per_file_part_workers) as pool:
        futures = [pool.submit(_upload_part, number, part) for number, part in parts]
        for fut in as_completed(futures):
            fut.result()

    complete = client.post(f"{base_url}/v1/uploads/{upload_id}/complete", timeout=120.0)
    complete.raise_for_status()

    total_ms = (time.perf_counter() - started) * 1000
    return {
        "upload_id": upload_id,
        "short_code": complete.json()["short_code"],
        "file_bytes": len(payload),
        "part_count": len(parts),
        "total_ms": total_ms,
        "part_latencies_ms": latencies_ms,
    }


def main() -> int:
    parser = argparse.ArgumentParser(description="Load test for the imagehost chunked upload lifecycle.")
    parser.add_argument("--base-url", default="http://127.0.0.1:8000", help="API base URL")
    parser.add_argument("--api-key", default=os.getenv("IMAGEHOST_API_KEY", "dev-key"), help="X-API-Key value")
    parser.add_argument("--files", type=int, default=5, help="Number of files to upload")
    parser.add_argument("--file-size-bytes", type=int, default=12 * 1024 * 1024, help="Per file size in bytes")
    parser.add_argument("--mime-type", default="image/png", help="Declared mime type for every upload")
    parser.add_argument(
        "--profile",
        choices=sorted(PROFILE_PRESETS.keys()),
        default="balanced",
        help="Concurrency profile preset to use.",
    )
    parser.add_argument(
        "--concurrent-files",
        type=int,
        default=None,
        help="How many files to upload in parallel (client-side). Overrides profile if set.",
    )
    parser.add_argument(
        "--per-file-part-workers",
        type=int,
        default=None,
        help="Parallel part uploads per file (client-side). Overrides profile if set.",
    )
    parser.add_argument("--output", default="", help="Optional path to write JSON summary")
    args = parser.parse_args()
    profile = PROFILE_PRESETS[args.profile]
    concurrent_files = args.concurrent_files if args.concurrent_files is not None else profile["concurrent_files"]
    per_file_part_workers = (
        args.per_file_part_workers if args.per_file_part_workers is not None else profile["per_file_part_workers"]
    )

    payload = _build_payload(args.file_size_bytes)
    upload_jobs = [f"load-file-{uuid.uuid4()}.png" for _ in range(args.files)]

    run_started = time.perf_counter()
    results = []

    with httpx.Client(headers={"X-API-Key": args.api_key}) as client, ThreadPoolExecutor(
        max_workers=concurrent_files
    ) as pool:
        futures = [
            pool.submit(
                _upload_one_file,
                client,
                args.base_url,
                file_name,
                payload,
                args.mime_type,
                per_file_part_workers,
            )
            for file_name in upload_jobs
        ]
        for fut in as_completed(futures):
            results.append(fut.result())

    elapsed = time.perf_counter() - run_started
    total_bytes = sum(item["file_bytes"] for item in results)
    total_parts = sum(item["part_count"] for item in results)
    all_part_latencies = [lat for item in results for lat in item["part_latencies_ms"]]
    mb_per_s = (total_bytes / (1024 * 1024)) / elapsed if elapsed > 0 else 0.0
    p95 = statistics.quantiles(all_part_latencies, n=20)[-1] if len(all_part_latencies) >= 20 else max(
        all_part_latencies, default=0.0
    )

    summary = {
        "base_url": args.base_url,
        "files": args.files,
        "file_size_bytes": args.file_size_bytes,
        "profile": args.profile,
        "concurrent_files": concurrent_files,
        "per_file_part_workers": per_file_part_workers,
        "elapsed_seconds": round(elapsed, 3),
        "total_bytes_uploaded": total_bytes,
        "total_parts_uploaded": total_parts,
        "throughput_mb_per_s": round(mb_per_s, 3),
        "part_latency_ms_avg": round(statistics.mean(all_part_latencies), 3) if all_part_latencies else 0.0,
        "part_latency_ms_p95": round(p95, 3),
        "file_total_ms_avg": round(statistics.mean(item["total_ms"] for item in results), 3) if results else 0.0,
        "short_codes": sorted(item["short_code"] for item in results),
    }

    print("Load test summary:")
    for key, value in summary.items():
        print(f"- {key}: {value}")

    if args.output:
        os.makedirs(os.path.dirname(args.output) or ".", exist_ok=True)
        with open(args.output, "w", encoding="utf-8") as f:
            json.dump(summary, f, indent=2)
        print(f"\nWrote summary to {args.output}")

    return 0


if __name__ == "__main__":
    raise SystemExit(main())
