from . import chapters, jobs, missions, renown, tasks

__all__ = ["chapters", "jobs", "missions", "renown", "tasks"]
