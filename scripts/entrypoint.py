import logging
import os

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("entrypoint")


def main() -> None:
  """Launch the orchestrator API while keeping migrations in the deploy pipeline."""
  # Migrations run as a dedicated deploy step (alembic upgrade head).
  logger.info("Starting autorun orchestrator (run alembic upgrade head in deploy pipeline)...")
  port = os.getenv("AUTORUN_PORT", "8002")
  # Replace the current process so uvicorn receives SIGTERM directly.
  args = ["uvicorn", "autorun.main:app", "--host", "0.0.0.0", "--port", port, "--no-server-header"]
  os.execvp("uvicorn", args)


if __name__ == "__main__":
  main()
