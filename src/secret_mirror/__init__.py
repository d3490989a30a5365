# src/secret_mirror/__init__.py
"""
secret-mirror: keeps copies of secrets in sync across namespaces.

A controller watches secrets, and whenever a secret named as a source in
the mirror rules changes, copies its data to every configured target. The
rules file is reloaded on the fly, and failed copies are retried with
exponential backoff.

The primary entry point for programmatic use is the `SecretMirrorPipeline`
class; the building blocks (`WorkQueue`, `Controller`, `ConfigAgent`,
`SecretMirror`) can be reused on their own.
"""

from typing import List

from secret_mirror.agent import ConfigAgent
from secret_mirror.controller import Controller
from secret_mirror.mirror import SecretMirror
from secret_mirror.pipeline import SecretMirrorPipeline
from secret_mirror.workqueue import WorkQueue

__all__: List[str] = [
    "ConfigAgent",
    "Controller",
    "SecretMirror",
    "SecretMirrorPipeline",
    "WorkQueue",
]
