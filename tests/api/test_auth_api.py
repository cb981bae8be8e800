from uuid import uuid4


def test_signup_login_and_me(client) -> None:
    email = f"Mixed_{uuid4().hex[:8]}@Test.com"
    signup = client.post(
        "/api/auth/signup",
        json={"email": email, "password": "StrongPass123", "full_name": "Jamie Rivera"},
    )
    assert signup.status_code == 201
    assert signup.json()["token_type"] == "bearer"

    login = client.post("/api/auth/login", data={"username": email.lower(), "password": "StrongPass123"})
    assert login.status_code == 200
    token = login.json()["access_token"]

    me = client.get("/api/auth/me", headers={"Authorization": f"Bearer {token}"})
    assert me.status_code == 200
    assert me.json()["email"] == email.lower()

    profile = client.get("/api/profile", headers={"Authorization": f"Bearer {token}"})
    assert profile.status_code == 200
    assert profile.json()["full_name"] == "Jamie Rivera"


def test_signup_duplicate_email_conflicts(client) -> None:
    email = f"dup_{uuid4().hex[:8]}@test.com"
    first = client.post("/api/auth/signup", json={"email": email, "password": "StrongPass123"})
    assert first.status_code == 201
    second = client.post("/api/auth/signup", json={"email": email, "password": "StrongPass123"})
    assert second.status_code == 409


def test_signup_rejects_short_password(client) -> None:
    response = client.post("/api/auth/signup", json={"email": f"s_{uuid4().hex[:8]}@test.com", "password": "short"})
    assert response.status_code == 422


def test_login_wrong_password(client, create_user) -> None:
    user = create_user()
    response = client.post("/api/auth/login", data={"username": user.email, "password": "WrongPass999"})
    assert response.status_code == 401


def test_me_rejects_garbage_token(client) -> None:
    response = client.get("/api/auth/me", headers={"Authorization": "Bearer not-a-jwt"})
    assert response.status_code == 401


def test_service_roots(client) -> None:
    assert client.get("/health").json() == {"status": "ok"}
    assert client.get("/api").json() == {"service": "EverWell API", "status": "ok"}
