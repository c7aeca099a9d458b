"""Tests for the ballot API endpoints.

Runs the ASGI app in-process through httpx with the in-process store
installed on app.state, so no server or database is needed.
"""

import asyncio
from datetime import datetime, timedelta, timezone

import httpx
import pytest

API = "/api/v1"


def _ballot(voter_id, president=1, secretary=3):
    return {
        "voter_id": voter_id,
        "selections": [
            {"position": "President", "candidate_id": president},
            {"position": "Secretary", "candidate_id": secretary},
        ],
    }


class TestVoteEndpoint:
    """POST /api/v1/votes"""

    async def test_submit_ballot(self, api_client: httpx.AsyncClient):
        """Test: a verified voter casts a full ballot.

        Flow:
        1. Submit a two-position ballot for V1
        2. Verify 201 with two recorded entries
        3. Verify the status endpoint reports has_voted
        """
        response = await api_client.post(f"{API}/votes", json=_ballot("V1"))

        assert response.status_code == 201
        data = response.json()
        assert data["voter_id"] == "V1"
        assert data["status"] == "accepted"
        assert len(data["entries"]) == 2
        assert {e["position"] for e in data["entries"]} == {"President", "Secretary"}

        status_response = await api_client.get(f"{API}/voters/V1/status")
        assert status_response.status_code == 200
        assert status_response.json() == {"voter_id": "V1", "has_voted": True}

    async def test_second_ballot_conflict(self, api_client: httpx.AsyncClient, store):
        first = await api_client.post(f"{API}/votes", json=_ballot("V1"))
        second = await api_client.post(f"{API}/votes", json=_ballot("V1", president=2, secretary=4))

        assert first.status_code == 201
        assert second.status_code == 409
        assert second.json()["detail"] == "You have already voted"
        assert len(store.list_ballot_entries("V1")) == 2

    async def test_duplicate_position(self, api_client: httpx.AsyncClient, store):
        payload = {
            "voter_id": "V1",
            "selections": [
                {"position": "President", "candidate_id": 1},
                {"position": "President", "candidate_id": 2},
            ],
        }

        response = await api_client.post(f"{API}/votes", json=payload)

        assert response.status_code == 400
        assert store.list_ballot_entries() == []

    async def test_candidate_for_wrong_position(self, api_client: httpx.AsyncClient):
        response = await api_client.post(f"{API}/votes", json=_ballot("V1", president=3, secretary=4))

        assert response.status_code == 400

    async def test_unverified_voter(self, api_client: httpx.AsyncClient):
        response = await api_client.post(f"{API}/votes", json=_ballot("V-UNVERIFIED"))

        assert response.status_code == 403

    async def test_unknown_voter(self, api_client: httpx.AsyncClient):
        response = await api_client.post(f"{API}/votes", json=_ballot("NOBODY"))

        assert response.status_code == 404

    @pytest.mark.parametrize("payload", [
        {"selections": [{"position": "President", "candidate_id": 1}]},
        {"voter_id": "   ", "selections": [{"position": "President", "candidate_id": 1}]},
        {"voter_id": "V1", "selections": [{"position": "President"}]},
        {"voter_id": "V1"},
    ])
    async def test_malformed_request(self, api_client: httpx.AsyncClient, payload):
        response = await api_client.post(f"{API}/votes", json=payload)

        assert response.status_code == 422

    async def test_voting_closed(self, api_client: httpx.AsyncClient, admin_headers):
        now = datetime.now(timezone.utc)
        window = {
            "start": (now - timedelta(days=2)).isoformat(),
            "end": (now - timedelta(days=1)).isoformat(),
        }
        update = await api_client.put(f"{API}/admin/voting-window", json=window, headers=admin_headers)
        assert update.status_code == 200
        assert update.json()["is_open"] is False

        response = await api_client.post(f"{API}/votes", json=_ballot("V1"))

        assert response.status_code == 403
        assert "ended" in response.json()["detail"]

    @pytest.mark.concurrency
    async def test_concurrent_same_voter(self, api_client: httpx.AsyncClient, store):
        """Test: simultaneous requests for one voter produce a single ballot."""
        responses = await asyncio.gather(*[
            api_client.post(f"{API}/votes", json=_ballot("V2"))
            for _ in range(5)
        ])

        codes = sorted(r.status_code for r in responses)
        assert codes == [201, 409, 409, 409, 409]
        assert len(store.list_ballot_entries("V2")) == 2

    async def test_unknown_voter_status(self, api_client: httpx.AsyncClient):
        response = await api_client.get(f"{API}/voters/NOBODY/status")

        assert response.status_code == 404


class TestResultsEndpoints:
    """Public and admin results."""

    async def test_public_results_require_publication(self, api_client: httpx.AsyncClient, admin_headers):
        await api_client.post(f"{API}/votes", json=_ballot("V1"))

        hidden = await api_client.get(f"{API}/results")
        assert hidden.status_code == 403

        status_response = await api_client.get(f"{API}/results/status")
        assert status_response.json()["published"] is False

        publish = await api_client.post(f"{API}/admin/results/publish", headers=admin_headers)
        assert publish.status_code == 200
        assert publish.json()["published"] is True

        visible = await api_client.get(f"{API}/results")
        assert visible.status_code == 200
        data = visible.json()
        assert data["audience"] == "public"
        assert [p["position"] for p in data["positions"]] == ["President", "Secretary"]
        assert data["positions"][0]["winner"]["candidate_id"] == 1

        unpublish = await api_client.post(f"{API}/admin/results/unpublish", headers=admin_headers)
        assert unpublish.json()["published"] is False
        assert (await api_client.get(f"{API}/results")).status_code == 403

    async def test_admin_requires_token(self, api_client: httpx.AsyncClient):
        missing = await api_client.get(f"{API}/admin/results")
        wrong = await api_client.get(f"{API}/admin/results", headers={"X-Admin-Token": "nope"})

        assert missing.status_code == 401
        assert wrong.status_code == 401

    async def test_admin_results_and_stats(self, api_client: httpx.AsyncClient, admin_headers):
        await api_client.post(f"{API}/votes", json=_ballot("V1", president=1))
        await api_client.post(f"{API}/votes", json=_ballot("V2", president=2))

        results = await api_client.get(f"{API}/admin/results", headers=admin_headers)
        assert results.status_code == 200
        president = results.json()["positions"][0]
        assert president["tied"] is True
        assert president["winner"] is None
        assert [c["candidate_id"] for c in president["leaders"]] == [1, 2]

        stats = await api_client.get(f"{API}/admin/stats", headers=admin_headers)
        assert stats.status_code == 200
        assert stats.json() == {
            "total_voters": 6,
            "total_eligible_voters": 5,
            "total_candidates": 4,
            "total_votes": 4,
            "unique_voters": 2,
            "turnout_percent": 40.0,
            "votes_by_position": {"President": 2, "Secretary": 2},
        }


class TestAdminEndpoints:
    """Candidate deletion and voting window management."""

    async def test_delete_candidate(self, api_client: httpx.AsyncClient, admin_headers):
        await api_client.post(f"{API}/votes", json=_ballot("V1", president=1, secretary=3))

        referenced = await api_client.delete(f"{API}/admin/candidates/1", headers=admin_headers)
        unreferenced = await api_client.delete(f"{API}/admin/candidates/2", headers=admin_headers)
        unknown = await api_client.delete(f"{API}/admin/candidates/99", headers=admin_headers)

        assert referenced.status_code == 409
        assert unreferenced.status_code == 204
        assert unknown.status_code == 404

        candidates = (await api_client.get(f"{API}/candidates")).json()
        assert [c["candidate_id"] for c in candidates["President"]] == [1]

    async def test_voting_window_validation(self, api_client: httpx.AsyncClient, admin_headers):
        now = datetime.now(timezone.utc)

        backwards = await api_client.put(
            f"{API}/admin/voting-window",
            json={"start": now.isoformat(), "end": (now - timedelta(hours=1)).isoformat()},
            headers=admin_headers
        )
        naive = await api_client.put(
            f"{API}/admin/voting-window",
            json={"start": "2026-01-01T08:00:00"},
            headers=admin_headers
        )

        assert backwards.status_code == 400
        assert naive.status_code == 422

    async def test_open_window(self, api_client: httpx.AsyncClient, admin_headers):
        now = datetime.now(timezone.utc)
        response = await api_client.put(
            f"{API}/admin/voting-window",
            json={"start": (now - timedelta(hours=1)).isoformat(), "end": (now + timedelta(hours=1)).isoformat()},
            headers=admin_headers
        )

        assert response.status_code == 200
        assert (await api_client.get(f"{API}/voting-window")).json()["is_open"] is True
        assert (await api_client.post(f"{API}/votes", json=_ballot("V3"))).status_code == 201


class TestServiceEndpoints:

    async def test_candidates_grouped(self, api_client: httpx.AsyncClient):
        response = await api_client.get(f"{API}/candidates")

        assert response.status_code == 200
        data = response.json()
        assert list(data) == ["President", "Secretary"]
        assert data["Secretary"][0]["name"] == "Carol Adjei"

    async def test_candidates_for_position(self, api_client: httpx.AsyncClient):
        response = await api_client.get(f"{API}/candidates/President")
        missing = await api_client.get(f"{API}/candidates/Treasurer")

        assert response.status_code == 200
        assert [c["name"] for c in response.json()] == ["Alice Mensah", "Bob Osei"]
        assert missing.status_code == 404

    async def test_root_lists_registered_routes(self, api_client: httpx.AsyncClient):
        """Test: every API route the app registers appears in the root listing."""
        from election_services.ballot_api.main import app

        response = await api_client.get("/")

        assert response.status_code == 200
        listed = set(response.json()["endpoints"].values())
        registered = {
            route.path for route in app.routes
            if route.path.startswith(API) or route.path == "/metrics"
        }
        assert registered <= listed

    async def test_health(self, api_client: httpx.AsyncClient):
        response = await api_client.get(f"{API}/health")

        assert response.status_code == 200
        assert response.json()["services"] == {"ballot_store": "connected"}

    async def test_metrics(self, api_client: httpx.AsyncClient):
        await api_client.post(f"{API}/votes", json=_ballot("V1"))

        response = await api_client.get("/metrics")

        assert response.status_code == 200
        assert "ballots_cast_total" in response.text
