import importlib
from typing import Any

from pydantic import BaseModel

from ..models import SerializedObject


class ObjectDeserializer:
    """
    Reconstruct a job or middleware instance from its serialized form.

    Supports:
    - Pydantic models
    - Plain classes accepting their attributes as keyword arguments
    - Nested class names such as ``Outer.Inner``
    """

    @staticmethod
    def deserialize(serialized: SerializedObject) -> Any:
        if not serialized.type or not serialized.module:
            raise ValueError("Missing object type or module metadata")

        try:
            target: Any = importlib.import_module(serialized.module)
            for part in serialized.type.split("."):
                target = getattr(target, part)

            if issubclass(target, BaseModel):
                return target.model_validate(serialized.data or {})

            return target(**(serialized.data or {}))

        except Exception as e:
            raise ValueError(
                f"Failed to reconstruct '{serialized.type}' from module '{serialized.module}': {e}"
            )
