"""Drive one job to a stopping point by ticking the orchestrator API.

Ctrl-C pauses the job before exiting, so a later run resumes where this one
left off.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys

from autorun.jobs.run_loop import BackoffPolicy, HttpTickClient, RunLoop

logger = logging.getLogger("run_job")


def _parse_args(argv: list[str]) -> argparse.Namespace:
  parser = argparse.ArgumentParser(description="Tick an autorun job until it completes, fails, pauses or blocks on approval.")
  parser.add_argument("job_id", help="Job identifier returned by POST /v1/jobs.")
  parser.add_argument("--base-url", default="http://localhost:8002", help="Orchestrator base URL.")
  parser.add_argument("--max-items", type=int, default=None, help="Items per tick; defaults to the job policy.")
  parser.add_argument("--resume", action="store_true", help="Persist running before ticking (for paused jobs).")
  parser.add_argument("--initial-delay", type=float, default=1.0)
  parser.add_argument("--max-delay", type=float, default=8.0)
  return parser.parse_args(argv)


async def _drive(args: argparse.Namespace) -> int:
  client = HttpTickClient(args.base_url)
  loop = RunLoop(client, args.job_id, backoff=BackoffPolicy(initial_delay=args.initial_delay, max_delay=args.max_delay), max_items_per_tick=args.max_items)
  task = asyncio.create_task(loop.resume() if args.resume else loop.run())
  try:
    state = await asyncio.shield(task)
  except asyncio.CancelledError:
    # Persist the pause first; the in-flight tick is allowed to finish.
    await loop.pause()
    state = await task

  snapshot = loop.last_snapshot
  progress = f"{snapshot.completed_count}/{snapshot.total_count}" if snapshot else "n/a"
  print(f"job={args.job_id} state={state} reason={loop.reason} ticks={loop.ticks} completed={progress}")
  return 0 if state in {"complete", "paused", "idle"} else 1


def main() -> None:
  logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s %(message)s")
  args = _parse_args(sys.argv[1:])
  try:
    sys.exit(asyncio.run(_drive(args)))
  except KeyboardInterrupt:
    sys.exit(130)


if __name__ == "__main__":
  main()
