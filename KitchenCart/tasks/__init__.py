"""
Task system for KitchenCart background operations
"""

import os
import importlib
import inspect
import logging
from typing import Dict, Type
from .base_task import BaseTask, WaitingForInput

logger = logging.getLogger(__name__)

# Dictionary to store all discovered task classes
TASK_REGISTRY: Dict[str, Type[BaseTask]] = {}


def discover_tasks():
    """Automatically discover and register all task classes in this directory"""
    current_dir = os.path.dirname(__file__)

    for filename in sorted(os.listdir(current_dir)):
        if filename.endswith('_task.py') and filename != 'base_task.py':
            module_name = filename[:-3]

            try:
                module = importlib.import_module(f'.{module_name}', package='KitchenCart.tasks')
            except ImportError as e:
                logger.error(f"Failed to import task module {module_name}: {e}")
                continue

            for name, obj in inspect.getmembers(module, inspect.isclass):
                if issubclass(obj, BaseTask) and obj is not BaseTask and not inspect.isabstract(obj):
                    task_type = obj().task_type
                    TASK_REGISTRY[str(getattr(task_type, "value", task_type))] = obj
                    logger.debug(f"Registered task: {task_type} -> {obj.__name__}")


def get_task_class(task_type: str) -> Type[BaseTask]:
    """Get a task class by its task type"""
    return TASK_REGISTRY.get(str(getattr(task_type, "value", task_type)))


def get_all_task_types() -> Dict[str, Type[BaseTask]]:
    """Get all registered task types"""
    return TASK_REGISTRY.copy()


def list_available_tasks():
    """List all available task types"""
    return list(TASK_REGISTRY.keys())


# Automatically discover tasks when the module is imported
discover_tasks()

__all__ = [
    "BaseTask",
    "TASK_REGISTRY",
    "WaitingForInput",
    "discover_tasks",
    "get_task_class",
    "get_all_task_types",
    "list_available_tasks"
]
