from .deserializer import ObjectDeserializer
from .serializer import ObjectSerializer

__all__ = ["ObjectSerializer", "ObjectDeserializer"]
