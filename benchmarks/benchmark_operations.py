"""
Benchmarks for s3-uploads operations.

Run with: uv run python benchmarks/benchmark_operations.py

This script measures uploads through the in-memory transport, optionally with
a simulated per-request latency so the effect of parallel part uploads shows.
It reports timing statistics including mean, median, min, max, standard
deviation, and throughput.
"""

from __future__ import annotations

import asyncio
import io
import json
import statistics
import sys
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

# Add src to path for running standalone
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from s3_uploads import UploadClient, UploadConfig
from s3_uploads.backends.memory import MemoryTransport
from s3_uploads.signing import ChunkedPayload, ChunkSigner

MiB = 1024 * 1024


class SlowTransport(MemoryTransport):
    """Memory transport that waits before answering part uploads."""

    def __init__(self, latency: float) -> None:
        super().__init__()
        self.latency = latency

    async def upload_part(
        self,
        bucket: str,
        key: str,
        upload_id: str,
        part_number: int,
        data: Any,
        *,
        headers: Mapping[str, str] | None = None,
    ):
        await asyncio.sleep(self.latency)
        return await super().upload_part(bucket, key, upload_id, part_number, data, headers=headers)


@dataclass
class BenchmarkResult:
    """Results from a benchmark run."""

    operation: str
    description: str
    iterations: int
    bytes_per_iteration: int
    mean_ns: float
    median_ns: float
    min_ns: int
    max_ns: int
    stddev_ns: float

    @property
    def throughput(self) -> float:
        """Bytes per second at the mean duration."""
        return self.bytes_per_iteration * 1_000_000_000 / self.mean_ns if self.mean_ns > 0 else 0.0

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "operation": self.operation,
            "description": self.description,
            "iterations": self.iterations,
            "bytes_per_iteration": self.bytes_per_iteration,
            "mean_ns": self.mean_ns,
            "median_ns": self.median_ns,
            "min_ns": self.min_ns,
            "max_ns": self.max_ns,
            "stddev_ns": self.stddev_ns,
            "throughput_bytes_per_sec": self.throughput,
        }


def format_time(ns: float) -> str:
    """Format nanoseconds to appropriate unit."""
    if ns < 1_000:
        return f"{ns:.2f} ns"
    if ns < 1_000_000:
        return f"{ns / 1_000:.2f} µs"
    if ns < 1_000_000_000:
        return f"{ns / 1_000_000:.2f} ms"
    return f"{ns / 1_000_000_000:.2f} s"


def format_throughput(rate: float) -> str:
    """Format bytes per second."""
    if rate >= 1024 * MiB:
        return f"{rate / (1024 * MiB):.2f} GiB/s"
    if rate >= MiB:
        return f"{rate / MiB:.2f} MiB/s"
    return f"{rate / 1024:.2f} KiB/s"


async def benchmark_operation(operation: Callable[[], Any], iterations: int) -> list[int]:
    """Run an operation multiple times and collect timing data.

    Args:
        operation: Async callable to benchmark
        iterations: Number of times to run the operation

    Returns:
        List of timing measurements in nanoseconds
    """
    timings = []
    for _ in range(iterations):
        start = time.perf_counter_ns()
        await operation()
        timings.append(time.perf_counter_ns() - start)
    return timings


def analyze_timings(operation: str, description: str, size: int, timings: list[int]) -> BenchmarkResult:
    """Compute statistics over timing measurements in nanoseconds."""
    return BenchmarkResult(
        operation=operation,
        description=description,
        iterations=len(timings),
        bytes_per_iteration=size,
        mean_ns=statistics.mean(timings),
        median_ns=statistics.median(timings),
        min_ns=min(timings),
        max_ns=max(timings),
        stddev_ns=statistics.stdev(timings) if len(timings) > 1 else 0.0,
    )


class Benchmarks:
    """Collection of upload benchmarks."""

    def __init__(self) -> None:
        """Initialize benchmarks."""
        self.results: list[BenchmarkResult] = []

    async def run_all(self) -> None:
        """Run all benchmark suites."""
        print("=" * 80)
        print("s3-uploads Performance Benchmarks")
        print("=" * 80)
        print()

        await self.benchmark_single_put()
        await self.benchmark_parallel_parts()
        await self.benchmark_streaming()
        self.benchmark_chunk_signing()

        print()
        print("=" * 80)
        print("Benchmark Complete")
        print("=" * 80)

    async def benchmark_single_put(self) -> None:
        """Benchmark objects small enough for one PUT."""
        print("Single PUT")
        print("-" * 80)

        client = UploadClient(MemoryTransport())
        for size, label, iterations in [(1_024, "1KB", 500), (102_400, "100KB", 200), (4 * MiB, "4MiB", 20)]:
            data = b"x" * size

            async def operation() -> None:
                await client.put_object("bench", f"single_{label}", data)

            timings = await benchmark_operation(operation, iterations)
            self._record(analyze_timings(f"put_{label}", f"PUT {label}", size, timings))

        print()

    async def benchmark_parallel_parts(self) -> None:
        """Benchmark a 40MiB multipart upload with 20ms part latency at several caps."""
        print("Multipart, 8 parts, 20ms per part")
        print("-" * 80)

        data = b"x" * 40 * MiB
        for cap in (1, 2, 4, None):
            client = UploadClient(SlowTransport(0.02), UploadConfig(max_parallel_requests=cap))

            async def operation() -> None:
                await client.put_object("bench", "parallel", data)

            label = "unlimited" if cap is None else str(cap)
            timings = await benchmark_operation(operation, 5)
            self._record(analyze_timings(f"multipart_cap_{label}", f"cap {label}", len(data), timings))

        print()

    async def benchmark_streaming(self) -> None:
        """Benchmark a stream of unknown size written in 64KiB chunks."""
        print("Streaming, unknown size")
        print("-" * 80)

        client = UploadClient(MemoryTransport())
        data = b"x" * 21 * MiB

        async def operation() -> None:
            async with client.open_writer("bench", "stream", part_size=5 * MiB) as writer:
                for offset in range(0, len(data), 64 * 1024):
                    await writer.write(data[offset : offset + 64 * 1024])

        timings = await benchmark_operation(operation, 5)
        self._record(analyze_timings("stream_21MiB", "Stream 21MiB", len(data), timings))
        print()

    def benchmark_chunk_signing(self) -> None:
        """Benchmark encoding a 5MiB part as a chunk-signed body."""
        print("Chunk signing")
        print("-" * 80)

        data = b"x" * 5 * MiB
        date = datetime.now(tz=timezone.utc)
        timings = []
        for _ in range(10):
            start = time.perf_counter_ns()
            payload = ChunkedPayload(io.BytesIO(data), len(data), ChunkSigner("0" * 64, date, "us-east-1", "secret"))
            for _frame in payload:
                pass
            timings.append(time.perf_counter_ns() - start)
        self._record(analyze_timings("sign_5MiB", "Sign 5MiB part", len(data), timings))
        print()

    def _record(self, result: BenchmarkResult) -> None:
        self.results.append(result)
        print(f"  {result.description:20} | ", end="")
        print(f"Mean: {format_time(result.mean_ns):>12} | ", end="")
        print(f"Median: {format_time(result.median_ns):>12} | ", end="")
        print(f"StdDev: {format_time(result.stddev_ns):>12}")
        print(f"{'':22} | ", end="")
        print(f"Min: {format_time(result.min_ns):>13} | ", end="")
        print(f"Max: {format_time(result.max_ns):>15} | ", end="")
        print(f"Rate: {format_throughput(result.throughput):>12}")

    def export_json(self, filepath: Path) -> None:
        """Export results to JSON file.

        Args:
            filepath: Path to output JSON file
        """
        data = {
            "benchmark": "s3-uploads",
            "transport": "memory",
            "timestamp": time.time(),
            "results": [result.to_dict() for result in self.results],
        }

        with filepath.open("w") as f:
            json.dump(data, f, indent=2)

        print(f"Results exported to: {filepath}")


async def main() -> None:
    """Run benchmarks."""
    benchmarks = Benchmarks()
    await benchmarks.run_all()

    # Export to JSON if requested
    if len(sys.argv) > 1 and sys.argv[1] == "--json":
        output_file = Path("benchmark_results.json")
        if len(sys.argv) > 2:
            output_file = Path(sys.argv[2])
        benchmarks.export_json(output_file)


if __name__ == "__main__":
    asyncio.run(main())
