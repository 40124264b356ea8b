"""Integration tests for the address book endpoints via TestClient."""

import pytest


def _address_payload(**overrides):
    payload = {
        "user_id": "user-1",
        "postal_code": "01310-100",
        "street": "Avenida Paulista",
        "number": "1000",
        "complement": "Apto 12",
        "district": "Bela Vista",
        "city": "São Paulo",
        "state": "sp",
        "label": "Home",
    }
    payload.update(overrides)
    return payload


def _create(client, **overrides):
    response = client.post("/api/addresses", json=_address_payload(**overrides))
    assert response.status_code == 201
    return response.json()["id"]


def _principal_ids(db, user_id):
    return [str(a["_id"]) for a in db["address"].find({"user_id": user_id, "is_principal": True})]


class TestCreateAddress:
    def test_create(self, client):
        response = client.post("/api/addresses", json=_address_payload())

        assert response.status_code == 201
        body = response.json()
        assert body["state"] == "SP"
        assert body["is_principal"] is False
        assert body["label"] == "Home"

    def test_postal_code_without_dash(self, client):
        response = client.post("/api/addresses", json=_address_payload(postal_code="01310100"))
        assert response.status_code == 201

    @pytest.mark.parametrize("postal_code", ["1310-100", "01310-10a", "013101000"])
    def test_malformed_postal_code(self, client, postal_code):
        response = client.post("/api/addresses", json=_address_payload(postal_code=postal_code))
        assert response.status_code == 422

    def test_missing_required_field(self, client):
        payload = _address_payload()
        del payload["street"]
        assert client.post("/api/addresses", json=payload).status_code == 422

    def test_new_principal_replaces_old(self, client, db):
        first = _create(client, is_principal=True)
        second = _create(client, is_principal=True, label="Work")

        assert _principal_ids(db, "user-1") == [second]
        assert first != second

    def test_principal_is_per_user(self, client, db):
        theirs = _create(client, user_id="user-2", is_principal=True)
        _create(client, is_principal=True)

        assert _principal_ids(db, "user-2") == [theirs]


class TestListAddresses:
    def test_principal_first_then_newest(self, client):
        oldest = _create(client, label="Parents")
        principal = _create(client, label="Home", is_principal=True)
        newest = _create(client, label="Work")
        _create(client, user_id="user-2")

        response = client.get("/api/addresses", params={"user_id": "user-1"})

        assert response.status_code == 200
        assert [a["id"] for a in response.json()] == [principal, newest, oldest]

    def test_requires_user(self, client):
        assert client.get("/api/addresses").status_code == 422


class TestSingleAddress:
    def test_get_own(self, client):
        address_id = _create(client)
        response = client.get(f"/api/addresses/{address_id}", params={"user_id": "user-1"})
        assert response.status_code == 200
        assert response.json()["street"] == "Avenida Paulista"

    def test_get_someone_elses(self, client):
        address_id = _create(client)
        response = client.get(f"/api/addresses/{address_id}", params={"user_id": "user-2"})
        assert response.status_code == 404

    def test_update_fields(self, client):
        address_id = _create(client)

        response = client.put(
            f"/api/addresses/{address_id}",
            params={"user_id": "user-1"},
            json={"number": "1500", "complement": None, "state": "rj"},
        )

        assert response.status_code == 200
        body = response.json()
        assert body["number"] == "1500"
        assert body["complement"] is None
        assert body["state"] == "RJ"
        assert body["street"] == "Avenida Paulista"

    def test_promote_to_principal(self, client, db):
        home = _create(client, is_principal=True)
        work = _create(client, label="Work")

        response = client.put(
            f"/api/addresses/{work}", params={"user_id": "user-1"}, json={"is_principal": True}
        )

        assert response.status_code == 200
        assert _principal_ids(db, "user-1") == [work]
        assert home != work

    def test_resave_principal_keeps_it(self, client, db):
        home = _create(client, is_principal=True)

        client.put(f"/api/addresses/{home}", params={"user_id": "user-1"}, json={"is_principal": True})

        assert _principal_ids(db, "user-1") == [home]

    def test_update_someone_elses(self, client):
        address_id = _create(client)
        response = client.put(
            f"/api/addresses/{address_id}", params={"user_id": "user-2"}, json={"number": "1"}
        )
        assert response.status_code == 404

    def test_delete(self, client, db):
        address_id = _create(client)

        response = client.delete(f"/api/addresses/{address_id}", params={"user_id": "user-1"})

        assert response.status_code == 200
        assert db["address"].count_documents({}) == 0

    def test_delete_someone_elses(self, client, db):
        address_id = _create(client)

        response = client.delete(f"/api/addresses/{address_id}", params={"user_id": "user-2"})

        assert response.status_code == 404
        assert db["address"].count_documents({}) == 1
