# /chatflow/handlers/loader.py

import importlib

from chatflow.engine.registry import HandlerRegistry, registry

# Importing a handler module registers its kinds on the shared registry.
BUILTIN_MODULES = (
    "chatflow.handlers.messaging",
    "chatflow.handlers.logic",
    "chatflow.handlers.timing",
    "chatflow.handlers.external",
    "chatflow.handlers.database",
    "chatflow.handlers.group",
)


def load_builtin_handlers() -> HandlerRegistry:
    for module in BUILTIN_MODULES:
        importlib.import_module(module)
    return registry
