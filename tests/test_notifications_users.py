def test_notifications_are_private(api, admin, user):
    other = api.register_and_login()
    api.create_prediction(admin["token"])

    mine = api.get("/api/notifications", token=user["token"]).get_json()
    assert len(mine) == 1
    note_id = mine[0]["id"]
    assert mine[0]["read"] is False

    stolen = api.patch(f"/api/notifications/{note_id}/read", token=other["token"])
    assert stolen.status_code == 404

    read = api.patch(f"/api/notifications/{note_id}/read", token=user["token"])
    assert read.status_code == 200
    assert read.get_json()["read"] is True

    unread = api.get("/api/notifications?unread=1", token=user["token"]).get_json()
    assert unread == []


def test_mark_all_read(api, admin, user):
    api.create_prediction(admin["token"])
    api.create_prediction(admin["token"], match="Lakers vs Warriors", sport="Basketball")

    resp = api.patch("/api/notifications/read-all", token=user["token"])
    assert resp.status_code == 200
    assert resp.get_json()["updated"] == 2
    assert api.get("/api/notifications?unread=1", token=user["token"]).get_json() == []


def test_notifications_require_auth(api):
    assert api.get("/api/notifications").status_code == 401
    assert api.patch("/api/notifications/read-all").status_code == 401


def test_admin_lists_users_without_passwords(api, admin, user):
    resp = api.get("/api/admin/users", token=admin["token"])
    assert resp.status_code == 200
    users = resp.get_json()
    assert {u["email"] for u in users} == {admin["user"]["email"], user["user"]["email"]}
    assert all("password" not in u for u in users)

    assert api.get("/api/admin/users", token=user["token"]).status_code == 403


def test_role_change(api, admin, user):
    path = f"/api/admin/users/{user['user']['id']}"

    assert api.patch(path, {"role": "superuser"}, token=admin["token"]).status_code == 400

    resp = api.patch(path, {"role": "admin"}, token=admin["token"])
    assert resp.status_code == 200
    assert resp.get_json()["user"]["role"] == "admin"

    # the new role is carried by tokens issued from now on
    relogin = api.post("/api/auth/login", {"email": user["user"]["email"], "password": "Password001!!"})
    token = relogin.get_json()["token"]
    assert api.get("/api/admin/users", token=token).status_code == 200


def test_admin_cannot_change_own_role(api, admin):
    resp = api.patch(f"/api/admin/users/{admin['user']['id']}", {"role": "user"}, token=admin["token"])
    assert resp.status_code == 400


def test_unknown_user(api, admin):
    resp = api.patch("/api/admin/users/00000000-0000-0000-0000-000000000000", {"role": "admin"}, token=admin["token"])
    assert resp.status_code == 404


def test_demoted_admin_loses_access_immediately(api, admin):
    second = api.create_admin()
    resp = api.patch(f"/api/admin/users/{second['user']['id']}", {"role": "user"}, token=admin["token"])
    assert resp.status_code == 200

    # old token still says admin, the store says otherwise
    assert api.get("/api/admin/users", token=second["token"]).status_code == 403
