"""Asynchronous dispatch: delayed task queue, retry scheduling, worker."""
