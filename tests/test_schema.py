# tests/test_schema.py
from datetime import datetime

from estatemetrics.schema import FieldType, infer_schema, infer_type, join


def test_infer_type_basics():
    assert infer_type(True) is FieldType.BOOLEAN
    assert infer_type(3) is FieldType.INTEGER
    assert infer_type(3.5) is FieldType.FLOAT
    assert infer_type("2024-05-01T00:00:00+00:00") is FieldType.DATE
    assert infer_type("2024-05-01") is FieldType.DATE
    assert infer_type(datetime(2024, 5, 1)) is FieldType.DATE
    assert infer_type("hello") is FieldType.TEXT
    assert infer_type({"lat": 1}) is FieldType.OBJECT
    assert infer_type([1, 2]) is FieldType.ARRAY
    assert infer_type(None) is None


def test_join_lattice():
    assert join(FieldType.INTEGER, FieldType.FLOAT) is FieldType.FLOAT
    assert join(FieldType.FLOAT, FieldType.INTEGER) is FieldType.FLOAT
    assert join(FieldType.INTEGER, FieldType.BOOLEAN) is FieldType.TEXT
    assert join(None, FieldType.DATE) is FieldType.DATE
    assert join(FieldType.OBJECT, FieldType.OBJECT) is FieldType.OBJECT


def test_infer_schema_joins_across_records():
    schema = infer_schema([
        {"price": 1000, "beds": 2, "note": None},
        {"price": 1050.5, "beds": "studio"},
        {"price": 900},
    ])
    assert schema == {"price": FieldType.FLOAT, "beds": FieldType.TEXT}


def test_infer_schema_empty():
    assert infer_schema([]) == {}
