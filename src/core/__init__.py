"""Core domain package for stackwatch.

Core contains the orchestration state machine, the stage runner and the
template fingerprint without any subprocess, watcher or UI code, keeping the
control flow portable and testable.
"""
