from datetime import timedelta

import pytest

from auth import (
    authenticate,
    authorize,
    check_ownership,
    create_access_token,
    get_password_hash,
    require_exporter_approval,
    require_verification,
)
from errors import Forbidden, NotFound, Unauthorized
from settings import get_settings


def token_for(user, **kwargs):
    return create_access_token({"sub": user["id"], "role": user["role"]}, get_settings(), **kwargs)


# ------------------------- authenticate -------------------------

def test_authenticate_resolves_user_without_credential(db, make_user):
    user = make_user("farmer")
    identity = authenticate(db, token_for(user), get_settings())
    assert identity["id"] == user["id"]
    assert identity["role"] == "farmer"
    assert "passwordHash" not in identity


def test_authenticate_rejects_missing_token(db):
    with pytest.raises(Unauthorized):
        authenticate(db, None, get_settings())


def test_authenticate_rejects_garbage_token(db):
    with pytest.raises(Unauthorized):
        authenticate(db, "not-a-jwt", get_settings())


def test_authenticate_rejects_expired_token(db, make_user):
    user = make_user()
    token = token_for(user, expires_delta=timedelta(minutes=-1))
    with pytest.raises(Unauthorized):
        authenticate(db, token, get_settings())


def test_authenticate_rejects_token_signed_with_other_key(db, make_user):
    user = make_user()
    settings = get_settings().model_copy(update={"SECRET_KEY": "someone-else"})
    token = create_access_token({"sub": user["id"]}, settings)
    with pytest.raises(Unauthorized):
        authenticate(db, token, get_settings())


def test_authenticate_rejects_deleted_user(db, make_user):
    user = make_user()
    token = token_for(user)
    db["user"].delete_one({"_id": user["_id"]})
    with pytest.raises(Unauthorized, match="User not found"):
        authenticate(db, token, get_settings())


def test_authenticate_rejects_deactivated_user(db, make_user):
    user = make_user(active=False)
    with pytest.raises(Unauthorized, match="deactivated"):
        authenticate(db, token_for(user), get_settings())


# ------------------------- role / verification / approval -------------------------

def test_authorize_without_identity_is_forbidden():
    with pytest.raises(Forbidden):
        authorize(None, ["admin"])


def test_authorize_checks_role_membership():
    assert authorize({"role": "buyer"}, ["buyer", "admin"])["role"] == "buyer"
    with pytest.raises(Forbidden):
        authorize({"role": "farmer"}, ["buyer"])


def test_require_verification():
    require_verification({"isVerified": True})
    with pytest.raises(Forbidden):
        require_verification({"isVerified": False})


def test_exporter_approval_only_applies_to_exporters():
    require_exporter_approval({"role": "buyer", "isExporterApproved": False})
    require_exporter_approval({"role": "exporter", "isExporterApproved": True})
    with pytest.raises(Forbidden):
        require_exporter_approval({"role": "exporter", "isExporterApproved": False})


# ------------------------- ownership -------------------------

def test_check_ownership_owner_passes(db, make_user, make_product):
    farmer = make_user("farmer")
    product = make_product(farmer)
    resource = check_ownership(db, "product", str(product["_id"]), "farmer", farmer)
    assert resource["_id"] == product["_id"]


def test_check_ownership_admin_passes_regardless(db, make_user, make_product):
    product = make_product(make_user("farmer"))
    admin = make_user("admin")
    assert check_ownership(db, "product", str(product["_id"]), "farmer", admin)["_id"] == product["_id"]


def test_check_ownership_non_owner_forbidden(db, make_user, make_product):
    product = make_product(make_user("farmer"))
    other = make_user("farmer")
    with pytest.raises(Forbidden):
        check_ownership(db, "product", str(product["_id"]), "farmer", other)


def test_check_ownership_missing_resource(db, make_user):
    with pytest.raises(NotFound):
        check_ownership(db, "product", "64b7f0f0f0f0f0f0f0f0f0f0", "farmer", make_user("admin"))


# ------------------------- endpoints -------------------------

def test_register_login_and_me(client, mailer):
    res = client.post("/auth/register", json={
        "firstName": "Nimal",
        "lastName": "Perera",
        "email": "Nimal@Example.com",
        "phone": "0712345678",
        "password": "secret123",
        "role": "farmer",
    })
    assert res.status_code == 201
    body = res.json()
    assert body["user"]["email"] == "nimal@example.com"
    assert "passwordHash" not in body["user"]
    assert body["user"]["isVerified"] is False
    mailer.send_welcome_email.assert_called_once()

    res = client.post("/auth/login", json={"email": "nimal@example.com", "password": "secret123"})
    assert res.status_code == 200
    token = res.json()["access_token"]

    res = client.get("/auth/me", headers={"Authorization": f"Bearer {token}"})
    assert res.status_code == 200
    assert res.json()["email"] == "nimal@example.com"


def test_register_rejects_duplicate_email_and_admin_role(client, make_user):
    existing = make_user("buyer")
    payload = {"firstName": "A", "lastName": "B", "email": existing["email"], "phone": "0712345678",
               "password": "secret123", "role": "buyer"}
    assert client.post("/auth/register", json=payload).status_code == 400
    payload.update(email="new@example.com", role="admin")
    assert client.post("/auth/register", json=payload).status_code == 422


def test_login_wrong_password(client, make_user):
    user = make_user(password_hash=get_password_hash("right-one"))
    res = client.post("/auth/login", json={"email": user["email"], "password": "wrong-one"})
    assert res.status_code == 401
    assert res.json()["error"] is True


def test_me_requires_token(client):
    assert client.get("/auth/me").status_code == 401
    assert client.get("/auth/me", headers={"Authorization": "Token abc"}).status_code == 401


def test_change_password(client, make_user, headers):
    user = make_user(password_hash=get_password_hash("old-pass"))
    res = client.put("/auth/password", json={"currentPassword": "nope", "newPassword": "new-pass"}, headers=headers(user))
    assert res.status_code == 400
    res = client.put("/auth/password", json={"currentPassword": "old-pass", "newPassword": "new-pass"}, headers=headers(user))
    assert res.status_code == 200
    assert client.post("/auth/login", json={"email": user["email"], "password": "new-pass"}).status_code == 200


def test_admin_gates(client, make_user, headers):
    exporter = make_user("exporter")
    buyer = make_user("buyer")
    admin = make_user("admin")

    assert client.get("/admin/users", headers=headers(buyer)).status_code == 403

    res = client.patch(f"/admin/users/{exporter['id']}/approve-exporter", headers=headers(admin))
    assert res.status_code == 200
    assert res.json()["isExporterApproved"] is True

    assert client.patch(f"/admin/users/{buyer['id']}/approve-exporter", headers=headers(admin)).status_code == 400

    res = client.patch(f"/admin/users/{buyer['id']}/deactivate", headers=headers(admin))
    assert res.json()["isActive"] is False
    assert client.get("/auth/me", headers=headers(buyer)).status_code == 401
