import logging
from datetime import date
from unittest.mock import MagicMock

import pytest
import requests

from observation_ingest import (
    MAX_PAGES,
    PER_PAGE,
    INaturalistClient,
    ObservationIngestor,
    PostgresObservationWriter,
    to_observation_rows,
    week_chunks,
)


def raw_obs(obs_id, coords=(-121.92, 37.88), common="California Poppy"):
    return {
        "id": obs_id,
        "observed_on": "2025-04-10",
        "quality_grade": "research",
        "taxon": {"id": 48225, "name": "Eschscholzia californica",
                  "preferred_common_name": common},
        "user": {"login": "hiker"},
        "photos": [{"url": "https://static.inaturalist.org/photos/1/square.jpg"}],
        "geojson": {"type": "Point", "coordinates": list(coords)} if coords else None,
    }


class PagedClient:
    """Serves *total* results in pages; optionally fails on some ranges."""

    def __init__(self, total, fail_starts=()):
        self.total = total
        self.fail_starts = set(fail_starts)
        self.calls = []

    def fetch_page(self, place_id, start, end, page, per_page):
        self.calls.append((place_id, start, end, page))
        if start in self.fail_starts:
            raise requests.ConnectionError("api down")
        first = (page - 1) * per_page
        return [raw_obs(i) for i in range(first, min(first + per_page, self.total))]


class ListWriter:
    def __init__(self):
        self.rows = []

    def upsert_observations(self, rows):
        self.rows.extend(rows)
        return len(rows)


# -- Mapping -----------------------------------------------------------------


def test_to_observation_rows_maps_fields():
    [row] = to_observation_rows([raw_obs(5)], "ca")

    assert row["id"] == 5
    assert row["state"] == "ca"
    assert row["species"] == "California Poppy"
    assert row["scientific_name"] == "Eschscholzia californica"
    assert row["taxon_id"] == 48225
    assert row["user_login"] == "hiker"
    assert row["photo_url"].endswith("/small.jpg")
    assert (row["longitude"], row["latitude"]) == (-121.92, 37.88)


def test_species_falls_back_to_scientific_name():
    [row] = to_observation_rows([raw_obs(5, common=None)], "ca")
    assert row["species"] == "Eschscholzia californica"


def test_results_without_coordinates_are_dropped():
    assert to_observation_rows([raw_obs(1, coords=None)], "ca") == []


def test_week_chunks_cover_thirty_days():
    chunks = week_chunks(date(2025, 4, 30), 30)

    assert len(chunks) == 5
    assert chunks[0] == (date(2025, 3, 31), date(2025, 4, 6))
    assert chunks[-1] == (date(2025, 4, 28), date(2025, 4, 30))


# -- Fetching ----------------------------------------------------------------


def test_fetch_stops_on_short_page():
    client = PagedClient(total=PER_PAGE + 3)
    ingestor = ObservationIngestor(client, ListWriter())

    results = ingestor.fetch("ca", date(2025, 4, 8), date(2025, 4, 15))

    assert len(results) == PER_PAGE + 3
    assert [c[3] for c in client.calls] == [1, 2]
    assert client.calls[0][0] == 14


def test_fetch_stops_at_page_ceiling(caplog):
    client = PagedClient(total=PER_PAGE * 10)
    ingestor = ObservationIngestor(client, ListWriter())

    with caplog.at_level(logging.WARNING):
        results = ingestor.fetch("wa", date(2025, 4, 8), date(2025, 4, 15))

    assert len(client.calls) == MAX_PAGES
    assert len(results) == PER_PAGE * MAX_PAGES
    assert "Page ceiling" in caplog.text


def test_ingest_writes_mapped_rows():
    writer = ListWriter()
    ingestor = ObservationIngestor(PagedClient(total=3), writer)

    result = ingestor.ingest("OR", date(2025, 4, 8), date(2025, 4, 15))

    assert result.region == "or"
    assert (result.fetched, result.written) == (3, 3)
    assert {r["state"] for r in writer.rows} == {"or"}


def test_ingest_rejects_unknown_region():
    with pytest.raises(ValueError):
        ObservationIngestor(PagedClient(total=0), ListWriter()).ingest(
            "tx", date(2025, 4, 8), date(2025, 4, 15),
        )


def test_backfill_continues_past_failing_chunk():
    today = date(2025, 4, 30)
    client = PagedClient(total=2, fail_starts={date(2025, 4, 7)})
    writer = ListWriter()

    results = ObservationIngestor(client, writer).backfill("ca", days=30, today=today)

    assert len(results) == 4
    assert date(2025, 4, 7) not in {r.start for r in results}
    assert len(writer.rows) == 8


# -- HTTP and database -------------------------------------------------------


def test_inaturalist_client_sends_flowering_filter(monkeypatch):
    response = MagicMock()
    response.json.return_value = {"results": [raw_obs(1)]}
    get = MagicMock(return_value=response)
    monkeypatch.setattr(requests, "get", get)

    results = INaturalistClient().fetch_page(
        14, date(2025, 4, 8), date(2025, 4, 15), 2, 200,
    )

    assert len(results) == 1
    params = get.call_args.kwargs["params"]
    assert params["place_id"] == 14
    assert params["d1"] == "2025-04-08"
    assert params["page"] == 2
    assert params["term_value_id"] == 13
    response.raise_for_status.assert_called_once()


def test_postgres_writer_batches():
    engine = MagicMock()
    conn = engine.connect.return_value.__enter__.return_value
    rows = to_observation_rows([raw_obs(i) for i in range(5)], "ca")

    written = PostgresObservationWriter(engine, batch_size=2).upsert_observations(rows)

    assert written == 5
    assert conn.execute.call_count == 3
    first_batch = conn.execute.call_args_list[0][0][1]
    assert isinstance(first_batch[0]["geojson"], str)
