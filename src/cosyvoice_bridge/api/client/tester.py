#!/usr/bin/env python3
"""Launch concurrent streaming TTS requests against the bridge for latency testing."""

import argparse
import asyncio
import csv
import time
from typing import Optional

import httpx


AUTH_HEADER = "x-sidecar-auth"


def build_params(
    text: str,
    voice: Optional[str],
    audio_format: Optional[str],
    sample_rate: Optional[int],
    rate: Optional[float],
    pitch: Optional[float],
    volume: Optional[int],
) -> dict:
    query = {
        "text": text,
        "voice": voice,
        "format": audio_format,
        "sampleRate": sample_rate,
        "rate": rate,
        "pitch": pitch,
        "volume": volume,
    }
    return {k: str(v) for k, v in query.items() if v is not None}


async def stream_once(
    client: httpx.AsyncClient,
    *,
    url: str,
    params: dict,
    token: Optional[str],
) -> dict:
    """Return status, total latency, TTFA and byte count for a single request."""

    headers = {AUTH_HEADER: token} if token else {}
    start = time.perf_counter()
    ttfa_ms: Optional[float] = None
    received = 0
    async with client.stream("GET", url, params=params, headers=headers) as response:
        async for chunk in response.aiter_bytes():
            if ttfa_ms is None:
                ttfa_ms = (time.perf_counter() - start) * 1000.0
            received += len(chunk)
        status = response.status_code

    latency_ms = (time.perf_counter() - start) * 1000.0
    error = None if status == 200 else f"HTTP {status}"
    return {"status": status, "latency_ms": latency_ms, "ttfa_ms": ttfa_ms, "bytes": received, "error": error}


async def run_queries(url: str, params: dict, token: Optional[str], queries: int, delay_ms: float, timeout: float) -> list[dict]:
    async with httpx.AsyncClient(timeout=timeout) as client:

        async def guarded() -> dict:
            try:
                return await stream_once(client, url=url, params=params, token=token)
            except httpx.HTTPError as exc:  # pragma: no cover - benchmark helper
                return {"status": None, "latency_ms": None, "ttfa_ms": None, "bytes": 0, "error": str(exc)}

        if delay_ms <= 0:
            return list(await asyncio.gather(*(guarded() for _ in range(queries))))

        results = []
        for query_idx in range(queries):
            results.append(await guarded())
            if query_idx < queries - 1:
                await asyncio.sleep(delay_ms / 1000.0)
        return results


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run streaming queries for latency testing")
    parser.add_argument("--host", default="127.0.0.1", help="Bridge host")
    parser.add_argument("--port", type=int, default=8787, help="Bridge port")
    parser.add_argument("--token", default=None, help="Shared secret sent as x-sidecar-auth")
    parser.add_argument("--text", default="你好，这是一段流式语音合成测试。")
    parser.add_argument("--voice", default=None)
    parser.add_argument("--format", dest="audio_format", choices=["mp3", "wav", "pcm"], default=None)
    parser.add_argument("--sample-rate", type=int, default=None)
    parser.add_argument("--rate", type=float, default=None)
    parser.add_argument("--pitch", type=float, default=None)
    parser.add_argument("--volume", type=int, default=None)
    parser.add_argument("--queries", type=int, default=4, help="Number of requests per run")
    parser.add_argument("--runs", type=int, default=1, help="Number of sequential runs")
    parser.add_argument(
        "--delay",
        type=float,
        default=0.0,
        help="Delay in milliseconds between sequential requests (0 for parallel)",
    )
    parser.add_argument("--timeout", type=float, default=60.0, help="Client timeout in seconds")
    parser.add_argument(
        "--metrics-file",
        default="metrics.csv",
        help="CSV file to store latency and TTFA results",
    )
    return parser.parse_args()


def write_results(path: str, runs_results: list[list[dict]]) -> None:
    with open(path, "w", newline="") as f:
        writer = csv.writer(f)
        writer.writerow(["run", "index", "status", "latency_ms", "ttfa_ms", "bytes", "error"])
        for run_idx, results in enumerate(runs_results):
            for idx, item in enumerate(results):
                writer.writerow(
                    [
                        run_idx,
                        idx,
                        item.get("status"),
                        item.get("latency_ms"),
                        item.get("ttfa_ms"),
                        item.get("bytes"),
                        item.get("error"),
                    ]
                )


def print_summary(results: list[dict], run_idx: int) -> None:
    print(f"Run {run_idx + 1} results:")
    successes = [r for r in results if r.get("error") is None]
    for idx, item in enumerate(results):
        if item.get("error"):
            print(f"[{idx}] ERROR: {item['error']}")
        else:
            ttfa_display = f", TTFA: {item['ttfa_ms']:.1f} ms" if item.get("ttfa_ms") is not None else ""
            print(f"[{idx}] Latency: {item['latency_ms']:.1f} ms{ttfa_display}, {item['bytes']} bytes")

    if successes:
        latencies = [r["latency_ms"] for r in successes if r.get("latency_ms") is not None]
        ttfas = [r["ttfa_ms"] for r in successes if r.get("ttfa_ms") is not None]
        if latencies:
            print(f"Average latency: {sum(latencies) / len(latencies):.1f} ms")
        if ttfas:
            print(f"Average TTFA: {sum(ttfas) / len(ttfas):.1f} ms")


def main() -> None:
    args = parse_args()
    url = f"http://{args.host}:{args.port}/tts/stream"
    params = build_params(
        args.text, args.voice, args.audio_format, args.sample_rate, args.rate, args.pitch, args.volume
    )

    all_results: list[list[dict]] = []
    for run_idx in range(args.runs):
        print(f"Starting run {run_idx + 1}/{args.runs}...")
        results = asyncio.run(run_queries(url, params, args.token, args.queries, args.delay, args.timeout))
        all_results.append(results)
        print_summary(results, run_idx)

    write_results(args.metrics_file, all_results)
    print(f"Saved metrics to {args.metrics_file}")


if __name__ == "__main__":
    main()
