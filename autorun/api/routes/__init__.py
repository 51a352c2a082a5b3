from . import chunks, jobs, ladders

__all__ = ["chunks", "jobs", "ladders"]
