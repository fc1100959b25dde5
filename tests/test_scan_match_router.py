"""
Scan Match API Tests

Tests validate the HTTP status mapping:
- 200 success
- 400 missing/wrong-typed fields
- 422 logical failure (no suitable archetype)
- 500 catalog unavailable, with an empty well-formed body

Version: scan_match_v1
"""

import pytest
from fastapi.testclient import TestClient

from main import app
from app.scan_match.catalog import InMemoryCatalogRepository
from app.scan_match.router import get_fallback_provider, get_repository


# ============================================================================
# Test Fixtures
# ============================================================================

CATALOG_ROWS = [
    {
        "id": f"M{i}",
        "name": f"Male {i}",
        "gender": "masculine",
        "obesity": "Non obèse",
        "muscularity": "Normal",
        "level": "Normal",
        "morphotype": "REC",
        "morph_index": 0.1 * i,
        "muscle_index": 0.0,
        "bmi_range": [20, 26],
        "morph_values": {"bigHips": 0.1 * i},
        "limb_masses": {"armMass": 1.0},
    }
    for i in range(7)
]


def make_body(muscularity="Normal", **indices) -> dict:
    return {
        "matching_config": {"gender": "masculine", "limit": 5},
        "extracted_data": {"estimated_bmi": 23.0},
        "semantic_profile": {"muscularity": muscularity, "morphotype": "REC"},
        "user_semantic_indices": {"morph_index": 0.0, "muscle_index": 0.0, **indices},
    }


class UnreachableRepository:

    def list_archetypes(self):
        raise ConnectionError("no route to host")

    def get_gender_mapping(self, sex_code):
        raise ConnectionError("no route to host")


@pytest.fixture
def client():
    app.dependency_overrides[get_repository] = lambda: InMemoryCatalogRepository(CATALOG_ROWS)
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def broken_client():
    app.dependency_overrides[get_repository] = lambda: UnreachableRepository()
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def no_mapping_client():
    app.dependency_overrides[get_repository] = lambda: InMemoryCatalogRepository(CATALOG_ROWS, mappings={})
    app.dependency_overrides[get_fallback_provider] = lambda: (lambda: {})
    yield TestClient(app)
    app.dependency_overrides.clear()


# ============================================================================
# Endpoints
# ============================================================================

class TestHealth:

    def test_health(self, client):
        response = client.get("/api/v1/scan-match/health")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "ok"
        assert data["module"] == "scan_match"
        assert data["version"] == "scan_match_v1"


class TestResolveEndpoint:

    def test_success(self, client):
        response = client.post("/api/v1/scan-match/resolve", json=make_body())
        assert response.status_code == 200

        data = response.json()
        assert [a["id"] for a in data["selected_archetypes"]] == ["M0", "M1", "M2", "M3", "M4"]
        assert data["strategy_used"] == "strict_bmi_muscular_gated"
        assert data["filtering_stats"]["final_selected"] == 5
        assert data["mapping_metadata"]["mapping_source"] == "catalog"
        assert data["k5_envelope"]["shape_params_envelope"]["bigHips"]["source"] == "archetypes"
        assert data["user_semantic_profile"]["sex"] == "male"

    def test_missing_fields_400(self, client):
        body = make_body()
        del body["user_semantic_indices"]

        response = client.post("/api/v1/scan-match/resolve", json=body)

        assert response.status_code == 400
        data = response.json()
        assert data["error_code"] == "VALIDATION_ERROR"
        assert data["invalid_fields"] == ["morph_index", "muscle_index"]

    def test_wrong_type_400(self, client):
        response = client.post("/api/v1/scan-match/resolve", json=make_body(morph_index="0.3"))
        assert response.status_code == 400

    def test_empty_body_400(self, client):
        response = client.post("/api/v1/scan-match/resolve")
        assert response.status_code == 400

    def test_int_too_large_for_float_400(self, client):
        body = make_body()
        body["extracted_data"]["estimated_bmi"] = 10 ** 400

        response = client.post("/api/v1/scan-match/resolve", json=body)

        assert response.status_code == 400
        assert response.json()["invalid_fields"] == ["estimated_bmi"]

    def test_null_semantic_profile_accepted(self, client):
        body = make_body()
        body["semantic_profile"] = None

        response = client.post("/api/v1/scan-match/resolve", json=body)

        assert response.status_code == 200
        assert response.json()["user_semantic_profile"]["muscularity"] == "Normal"

    def test_float_limit_accepted(self, client):
        body = make_body()
        body["matching_config"]["limit"] = 3.0

        response = client.post("/api/v1/scan-match/resolve", json=body)

        assert response.status_code == 200
        assert [a["id"] for a in response.json()["selected_archetypes"]] == ["M0", "M1", "M2"]

    def test_logical_failure_422(self, client):
        response = client.post("/api/v1/scan-match/resolve", json=make_body(muscularity="Musclé"))
        assert response.status_code == 422

        data = response.json()
        assert data["selected_archetypes"] == []
        assert data["k5_envelope"] is None
        assert data["strategy_used"] == "logical_failure_no_suitable_archetypes"
        assert data["filtering_stats"]["total"] == 7
        assert data["filtering_stats"]["after_muscular_gating"] == 0

    def test_catalog_unavailable_500(self, broken_client):
        response = broken_client.post("/api/v1/scan-match/resolve", json=make_body())
        assert response.status_code == 500

        data = response.json()
        assert data["selected_archetypes"] == []
        assert data["strategy_used"] == "server_error_fallback"
        assert data["diagnostics"]["error_type"] == "CATALOG_UNAVAILABLE"
        assert data["user_semantic_profile"]["sex"] == "male"

    def test_mapping_unavailable_500(self, no_mapping_client):
        response = no_mapping_client.post("/api/v1/scan-match/resolve", json=make_body())
        assert response.status_code == 500

        data = response.json()
        assert data["selected_archetypes"] == []
        assert data["k5_envelope"] is None
        assert data["strategy_used"] == "server_error_fallback"
        assert data["diagnostics"]["error_type"] == "MAPPING_UNAVAILABLE"


class TestEnvelopeValidateEndpoint:

    def make_envelope(self, low, high):
        return {
            "shape_params_envelope": {
                "bigHips": {
                    "min": low,
                    "max": high,
                    "archetype_min": low,
                    "archetype_max": high,
                    "source": "archetypes",
                },
            },
            "limb_masses_envelope": {},
            "envelope_metadata": {
                "archetypes_used": ["M1"],
                "total_keys_processed": 1,
                "keys_with_archetype_data": 1,
                "keys_using_db_fallback": 0,
                "envelope_generation_timestamp": "2026-01-01T00:00:00+00:00",
            },
        }

    def test_valid_envelope(self, client):
        response = client.post("/api/v1/scan-match/envelope/validate", json=self.make_envelope(0.1, 0.4))
        assert response.status_code == 200
        assert response.json()["is_valid"] is True

    def test_inverted_envelope_corrected(self, client):
        response = client.post("/api/v1/scan-match/envelope/validate", json=self.make_envelope(0.8, 0.2))
        assert response.status_code == 200

        data = response.json()
        assert data["is_valid"] is False
        assert data["corrections_made"] == 1
        fixed = data["corrected_envelope"]["shape_params_envelope"]["bigHips"]
        assert (fixed["min"], fixed["max"]) == (0.2, 0.8)

    def test_non_finite_archetype_bounds_corrected(self, client):
        raw = (
            '{"shape_params_envelope": {"bigHips": {"min": 0.1, "max": 0.4,'
            ' "archetype_min": NaN, "archetype_max": 0.4, "source": "archetypes"}},'
            ' "limb_masses_envelope": {},'
            ' "envelope_metadata": {"archetypes_used": ["M1"], "total_keys_processed": 1,'
            ' "keys_with_archetype_data": 1, "keys_using_db_fallback": 0,'
            ' "envelope_generation_timestamp": "2026-01-01T00:00:00+00:00"}}'
        )
        response = client.post(
            "/api/v1/scan-match/envelope/validate",
            content=raw,
            headers={"content-type": "application/json"},
        )
        assert response.status_code == 200

        data = response.json()
        assert data["is_valid"] is False
        fixed = data["corrected_envelope"]["shape_params_envelope"]["bigHips"]
        assert (fixed["archetype_min"], fixed["archetype_max"]) == (0.1, 0.4)
