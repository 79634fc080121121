from typing import Any

from ..models import SerializedObject


class ObjectSerializer:
    """
    Serialize a job or middleware instance for storage and transmission.

    Returns:
        SerializedObject carrying (data, type_name, module_path)
    """

    @staticmethod
    def serialize(obj: Any) -> SerializedObject:
        if obj is None:
            raise ValueError("Cannot serialize None")

        obj_type = type(obj).__qualname__
        obj_module = type(obj).__module__

        if "<locals>" in obj_type:
            raise ValueError(
                f"Cannot serialize '{obj_type}': classes defined inside functions "
                "cannot be re-imported by a worker"
            )

        if hasattr(obj, "model_dump") and callable(obj.model_dump):
            try:
                data = obj.model_dump(mode="json")
            except Exception as e:
                raise ValueError(f"Failed to serialize Pydantic model {obj_type}: {e}")
            return SerializedObject(data=data, type=obj_type, module=obj_module)

        try:
            return SerializedObject(data=dict(vars(obj)), type=obj_type, module=obj_module)
        except Exception as e:
            raise ValueError(
                f"Cannot serialize object of type '{obj_type}' from module '{obj_module}': {e}"
            )
