import pytest


def test_admin_publishes_prediction(api, admin):
    prediction = api.create_prediction(admin["token"], tipster="ProTipper", confidence=85)
    assert prediction["status"] == "pending"
    assert prediction["odds"] == pytest.approx(1.85)
    assert prediction["created_by"] == admin["user"]["id"]
    assert prediction["tipster"] == "ProTipper"
    assert prediction["event_date"].startswith("2026-11-02T19:45:00")


def test_legacy_create_route(api, admin):
    resp = api.post("/api/admin/create-prediction", {
        "match": "Lakers vs Warriors",
        "sport": "Basketball",
        "odds": "1.9",
        "date": "2026-11-03T02:00:00Z",
    }, token=admin["token"])
    assert resp.status_code == 201
    assert resp.get_json()["odds"] == pytest.approx(1.9)


def test_only_admins_publish(api, user):
    resp = api.post("/api/predictions", {
        "match": "A vs B", "sport": "Soccer", "odds": 2.0, "date": "2026-11-02",
    }, token=user["token"])
    assert resp.status_code == 403

    anonymous = api.post("/api/predictions", {"match": "A vs B"})
    assert anonymous.status_code == 401


@pytest.mark.parametrize("payload", [
    {"sport": "Soccer", "odds": 2.0, "date": "2026-11-02"},
    {"match": "A vs B", "odds": 2.0, "date": "2026-11-02"},
    {"match": "A vs B", "sport": "Soccer", "date": "2026-11-02"},
    {"match": "A vs B", "sport": "Soccer", "odds": 2.0},
    {"match": "A vs B", "sport": "Soccer", "odds": 1.0, "date": "2026-11-02"},
    {"match": "A vs B", "sport": "Soccer", "odds": "abc", "date": "2026-11-02"},
    {"match": "A vs B", "sport": "Soccer", "odds": 2.0, "date": "next friday"},
    {"match": "A vs B", "sport": "Soccer", "odds": 2.0, "date": "2026-11-02", "confidence": 150},
])
def test_prediction_validation(api, admin, payload):
    resp = api.post("/api/predictions", payload, token=admin["token"])
    assert resp.status_code == 400, resp.get_data(as_text=True)


def test_public_listing_and_filters(api, admin):
    api.create_prediction(admin["token"])
    api.create_prediction(admin["token"], match="Lakers vs Warriors", sport="Basketball", odds=1.75)

    resp = api.get("/api/predictions")
    assert resp.status_code == 200
    predictions = resp.get_json()["predictions"]
    assert len(predictions) == 2
    assert all(p["isFollowed"] is False for p in predictions)

    basketball = api.get("/api/predictions/all?sport=Basketball").get_json()["predictions"]
    assert [p["match"] for p in basketball] == ["Lakers vs Warriors"]

    assert api.get("/api/predictions?status=bogus").status_code == 400


def test_get_single_prediction(api, admin):
    prediction = api.create_prediction(admin["token"])
    resp = api.get(f"/api/predictions/{prediction['id']}")
    assert resp.status_code == 200
    assert resp.get_json()["prediction"]["match"] == "Inter vs Juventus"

    assert api.get("/api/predictions/00000000-0000-0000-0000-000000000000").status_code == 404
    assert api.get("/api/predictions/not-a-uuid").status_code == 400


def test_status_update_is_one_way(api, admin):
    prediction = api.create_prediction(admin["token"])
    path = f"/api/admin/predictions/{prediction['id']}/status"

    won = api.patch(path, {"status": "won", "result_note": "2-0"}, token=admin["token"])
    assert won.status_code == 200
    assert won.get_json()["prediction"]["status"] == "won"
    assert won.get_json()["prediction"]["result_note"] == "2-0"

    flip = api.patch(path, {"status": "lost"}, token=admin["token"])
    assert flip.status_code == 409

    back = api.patch(path, {"status": "pending"}, token=admin["token"])
    assert back.status_code == 400

    current = api.get(f"/api/predictions/{prediction['id']}").get_json()["prediction"]
    assert current["status"] == "won"


def test_status_update_requires_admin(api, admin, user):
    prediction = api.create_prediction(admin["token"])
    resp = api.patch(f"/api/admin/predictions/{prediction['id']}/status", {"status": "won"}, token=user["token"])
    assert resp.status_code == 403


def test_follow_and_wallet_profit(api, admin, user):
    prediction = api.create_prediction(admin["token"], match="Inter vs Juventus", odds=1.85)

    follow = api.post("/api/predictions/follow", {"predictionId": prediction["id"]}, token=user["token"])
    assert follow.status_code == 201
    assert follow.get_json()["follow"]["stake"] == pytest.approx(100)

    listed = api.get("/api/predictions", token=user["token"]).get_json()["predictions"]
    assert listed[0]["isFollowed"] is True

    pending_wallet = api.get("/api/wallet", token=user["token"]).get_json()
    assert pending_wallet["tips"][0]["profit"] is None
    assert pending_wallet["stats"]["pending"] == 1

    api.patch(f"/api/admin/predictions/{prediction['id']}/status", {"status": "won"}, token=admin["token"])

    wallet = api.get("/api/wallet", token=user["token"]).get_json()
    tip = wallet["tips"][0]
    assert tip["status"] == "won"
    assert tip["profit"] == pytest.approx(85)
    assert wallet["stats"]["won"] == 1
    assert wallet["stats"]["totalProfit"] == pytest.approx(85)
    assert wallet["stats"]["roi"] == pytest.approx(85)


def test_follow_rules(api, admin, user):
    prediction = api.create_prediction(admin["token"])
    body = {"predictionId": prediction["id"], "stake": 50}

    assert api.post("/api/predictions/follow", body, token=user["token"]).status_code == 201
    assert api.post("/api/predictions/follow", body, token=user["token"]).status_code == 400
    assert api.post("/api/predictions/follow", body).status_code == 401

    unfollow = api.delete(f"/api/predictions/{prediction['id']}/follow", token=user["token"])
    assert unfollow.status_code == 200
    again = api.delete(f"/api/predictions/{prediction['id']}/follow", token=user["token"])
    assert again.status_code == 404

    api.patch(f"/api/admin/predictions/{prediction['id']}/status", {"status": "lost"}, token=admin["token"])
    late = api.post("/api/predictions/follow", body, token=user["token"])
    assert late.status_code == 400


def test_lost_follow_counts_stake_as_loss(api, admin, user):
    prediction = api.create_prediction(admin["token"], odds=2.1)
    api.post("/api/predictions/follow", {"predictionId": prediction["id"], "stake": 75}, token=user["token"])
    api.patch(f"/api/admin/predictions/{prediction['id']}/status", {"status": "lost"}, token=admin["token"])

    wallet = api.get("/api/wallet", token=user["token"]).get_json()
    assert wallet["tips"][0]["profit"] == pytest.approx(-75)
    assert wallet["stats"]["roi"] == pytest.approx(-100)


def test_publishing_and_results_notify_users(api, admin, user):
    prediction = api.create_prediction(admin["token"])

    notes = api.get("/api/notifications", token=user["token"]).get_json()
    assert [n["type"] for n in notes] == ["new_tip"]
    assert notes[0]["prediction_id"] == prediction["id"]

    # admins do not get new_tip notifications
    assert api.get("/api/notifications", token=admin["token"]).get_json() == []

    api.post("/api/predictions/follow", {"predictionId": prediction["id"]}, token=user["token"])
    api.patch(f"/api/admin/predictions/{prediction['id']}/status", {"status": "won"}, token=admin["token"])

    types = sorted(n["type"] for n in api.get("/api/notifications", token=user["token"]).get_json())
    assert types == ["new_tip", "result"]


@pytest.mark.parametrize("stake", [0.001, 12.345, True, -5])
def test_follow_stake_must_be_whole_cents(api, admin, user, stake):
    prediction = api.create_prediction(admin["token"])
    resp = api.post("/api/predictions/follow", {"predictionId": prediction["id"], "stake": stake}, token=user["token"])
    assert resp.status_code == 400
    assert api.get("/api/wallet", token=user["token"]).get_json()["tips"] == []
