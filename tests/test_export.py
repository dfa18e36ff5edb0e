# tests/test_export.py
from sqlalchemy import text

from estatemetrics.export import ReportingExporter, flatten_property, layout_for, report_columns

from conftest import region_options


def rows(connection, table):
    with connection.lease() as engine, engine.connect() as conn:
        return [dict(r._mapping) for r in conn.execute(text(f'SELECT * FROM "{table}" ORDER BY 1'))]


def test_layout_by_collection_suffix():
    assert layout_for("austin_rentals_report")[0] is report_columns
    assert layout_for("austin_rentals") is not None
    assert layout_for("austin_properties") is not None
    assert layout_for("austin_rentals_redfin") is None
    assert layout_for("registered_indexes") is None


def test_flatten_property_columns():
    row = flatten_property({
        "id": "p", "price": 1, "latLong": {"lat": 1.5, "lon": 2.5}, "sqFt": 900,
        "costs": {"tax": 10, "total": 24, "monthlyTotal": 2},
        "returns": {"avg": {"capRate": 0.05, "breakEvenYears": None, "monthlyCashFlow": 12.5}, "median": {"roi": 0.04}},
    })
    assert row["lat"] == 1.5
    assert row["sqft"] == 900
    assert row["costs_tax"] == 10
    assert row["costs_hoa"] is None
    assert row["costs_monthlytotal"] == 2
    assert row["returns_avg_monthlycashflow"] == 12.5
    assert row["returns_avg_caprate"] == 0.05
    assert row["returns_median_roi"] == 0.04
    assert "returns_avg_breakevenyears" in row


def test_sync_builds_flat_tables(pipeline):
    pipeline.update_regions_index("austin", region_options())
    pipeline.fetch_region("austin")
    exporter = ReportingExporter(pipeline.store)

    written = exporter.sync()

    assert written == {
        "flat_austin_properties": 2,
        "flat_austin_rentals": 7,
        "flat_austin_rentals_report": 2,
    }
    properties = rows(pipeline.store.connection, "flat_austin_properties")
    assert {p["costs_tax"] for p in properties} == {6000.0, 5000.0}
    report = rows(pipeline.store.connection, "flat_austin_rentals_report")
    assert {r["key"] for r in report} == {"total", "2"}
    assert all(r["rent_percentile_50"] for r in report)


def test_sync_replaces_previous_rows(pipeline):
    pipeline.update_regions_index("austin", region_options())
    pipeline.fetch_region("austin")
    exporter = ReportingExporter(pipeline.store)
    exporter.sync()
    pipeline.store.delete("austin_rentals", pipeline.store.get("austin_rentals")["records"][0]["id"])

    assert exporter.sync()["flat_austin_rentals"] == 6
    assert len(rows(pipeline.store.connection, "flat_austin_rentals")) == 6
