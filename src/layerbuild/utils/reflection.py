import importlib
import inspect
import logging
from typing import Any

logger = logging.getLogger(__name__)


def import_object(ref: str) -> Any:
    """
    Import an object from a 'package.module:attribute' reference

    Args:
        ref: reference string (e.g. 'mypkg.executors:DockerExecutor')

    Returns:
        the referenced object

    Raises:
        ValueError: if the reference is malformed
        ImportError / AttributeError: if the module or attribute does not exist
    """
    module_name, sep, attr_path = ref.partition(":")
    if not sep or not module_name or not attr_path:
        raise ValueError(f"Reference must look like 'package.module:Name', got '{ref}'")

    module = importlib.import_module(module_name)
    obj: Any = module
    for part in attr_path.split("."):
        obj = getattr(obj, part)
    logger.debug(f"Imported '{attr_path}' from module '{module_name}'")
    return obj


def instantiate(ref: str, base_cls: type, **kwargs) -> Any:
    """
    Import a class by reference, check it extends base_cls and instantiate it

    Args:
        ref: reference string (e.g. 'mypkg.executors:DockerExecutor')
        base_cls: required base class
        kwargs: constructor keyword arguments
    """
    cls = import_object(ref)
    if not inspect.isclass(cls) or not issubclass(cls, base_cls):
        raise TypeError(f"'{ref}' is not a subclass of {base_cls.__name__}")
    if inspect.isabstract(cls):
        raise TypeError(f"'{ref}' is abstract and cannot be instantiated")
    return cls(**kwargs)
