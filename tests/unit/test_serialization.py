import pytest

from baler.models import SerializedObject
from baler.serialization import ObjectDeserializer, ObjectSerializer

from chain_jobs import NameJob, TagMiddleware


class PlainJob:
    def __init__(self, size: int):
        self.size = size


class Outer:
    class Inner(NameJob):
        pass


def test_pydantic_job_is_rebuilt_from_module_path():
    serialized = ObjectSerializer.serialize(NameJob(name="Sam"))

    assert serialized == SerializedObject(data={"name": "Sam"}, type="NameJob", module="chain_jobs")
    assert ObjectDeserializer.deserialize(serialized) == NameJob(name="Sam")


def test_private_job_state_is_not_serialized():
    job = NameJob(name="Sam")
    job.bind(engine=object(), chain_id="c", step_id=1)

    serialized = ObjectSerializer.serialize(job)
    rebuilt = ObjectDeserializer.deserialize(serialized)

    assert serialized.data == {"name": "Sam"}
    assert rebuilt.chain_id is None


def test_nested_and_plain_classes():
    nested = ObjectSerializer.serialize(Outer.Inner(name="deep"))
    plain = ObjectSerializer.serialize(PlainJob(size=3))

    assert nested.type == "Outer.Inner"
    assert ObjectDeserializer.deserialize(nested) == Outer.Inner(name="deep")
    assert ObjectDeserializer.deserialize(plain).size == 3


def test_middleware_round_trip():
    serialized = ObjectSerializer.serialize(TagMiddleware(tag="audit"))

    assert ObjectDeserializer.deserialize(serialized) == TagMiddleware(tag="audit")


def test_local_classes_are_rejected():
    class Local(NameJob):
        pass

    with pytest.raises(ValueError):
        ObjectSerializer.serialize(Local(name="x"))
    with pytest.raises(ValueError):
        ObjectSerializer.serialize(None)


@pytest.mark.parametrize(
    "serialized",
    [
        SerializedObject(data={}, type=None, module="chain_jobs"),
        SerializedObject(data={}, type="Missing", module="chain_jobs"),
        SerializedObject(data={}, type="NameJob", module="no.such.module"),
        SerializedObject(data={"wrong": 1}, type="NameJob", module="chain_jobs"),
    ],
)
def test_unrebuildable_objects_raise_value_error(serialized):
    with pytest.raises(ValueError):
        ObjectDeserializer.deserialize(serialized)
