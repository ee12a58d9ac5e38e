"""Workout sync: merge provider workouts and snapshot files into a local store."""

__version__ = "0.1.0"
