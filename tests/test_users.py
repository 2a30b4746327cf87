def test_create_user_returns_temporary_password(client, admin):
    """Admins create staff accounts that must change their password"""
    response = client.post('/api/users', headers=admin.headers, json={
        "email": "New.Invigilator@examtrack.test",
        "name": "Kofi Boateng",
        "role": "INVIGILATOR",
        "department": "Mathematics",
    })

    assert response.status_code == 201
    data = response.get_json()
    assert data["user"]["email"] == "new.invigilator@examtrack.test"
    assert data["user"]["firstName"] == "Kofi"
    assert data["user"]["lastName"] == "Boateng"
    assert data["user"]["passwordChanged"] is False

    login = client.post('/api/auth/login', json={
        "email": "new.invigilator@examtrack.test",
        "password": data["temporaryPassword"],
    })
    assert login.status_code == 200


def test_create_user_duplicate_email(client, admin, lecturer):
    response = client.post('/api/users', headers=admin.headers, json={
        "email": lecturer.email,
        "name": "Someone Else",
        "role": "LECTURER",
    })

    assert response.status_code == 409
    assert response.get_json()["error"] == "Email already exists"


def test_create_user_invalid_role(client, admin):
    response = client.post('/api/users', headers=admin.headers, json={
        "email": "x@examtrack.test",
        "name": "X",
        "role": "JANITOR",
    })

    assert response.status_code == 400
    assert response.get_json()["details"][0]["field"] == "role"


def test_create_user_requires_admin(client, lecturer):
    response = client.post('/api/users', headers=lecturer.headers, json={
        "email": "x@examtrack.test",
        "name": "X",
        "role": "LECTURER",
    })

    assert response.status_code == 403


def test_list_users_filters(client, admin, lecturer, invigilator):
    response = client.get('/api/users?role=LECTURER', headers=admin.headers)

    assert response.status_code == 200
    data = response.get_json()
    assert [u["id"] for u in data["users"]] == [lecturer.id]
    assert data["pagination"]["total"] == 1


def test_handlers_list(client, admin, lecturer, invigilator, class_rep):
    """Only custody-capable roles are offered as transfer receivers"""
    response = client.get('/api/users/handlers', headers=invigilator.headers)

    assert response.status_code == 200
    ids = {h["id"] for h in response.get_json()["handlers"]}
    assert ids == {lecturer.id, invigilator.id}


def test_update_user(client, admin, lecturer):
    response = client.put(f'/api/users/{lecturer.id}', headers=admin.headers, json={
        "name": "Ama Owusu",
        "role": "DEPARTMENT_HEAD",
    })

    assert response.status_code == 200
    user = response.get_json()["user"]
    assert user["firstName"] == "Ama"
    assert user["role"] == "DEPARTMENT_HEAD"


def test_regular_admin_cannot_modify_super_admin(client, admin, super_admin):
    response = client.put(f'/api/users/{super_admin.id}', headers=admin.headers, json={"name": "Changed"})

    assert response.status_code == 403


def test_deactivate_and_reactivate(client, admin, lecturer):
    response = client.patch(f'/api/users/{lecturer.id}/deactivate', headers=admin.headers)
    assert response.status_code == 200
    assert response.get_json()["user"]["isActive"] is False

    # existing tokens stop working once the account is inactive
    response = client.get('/api/auth/profile', headers=lecturer.headers)
    assert response.status_code == 401

    response = client.patch(f'/api/users/{lecturer.id}/reactivate', headers=admin.headers)
    assert response.status_code == 200
    assert response.get_json()["user"]["isActive"] is True


def test_cannot_deactivate_self(client, admin):
    response = client.patch(f'/api/users/{admin.id}/deactivate', headers=admin.headers)

    assert response.status_code == 400


def test_cannot_deactivate_super_admin(client, super_admin, admin):
    response = client.patch(f'/api/users/{super_admin.id}/deactivate', headers=admin.headers)

    assert response.status_code == 403


def test_get_missing_user(client, admin):
    response = client.get('/api/users/does-not-exist', headers=admin.headers)

    assert response.status_code == 404
