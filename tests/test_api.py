def mm(client, text, user_id="account1", token="test-token"):
    return client.post("/mm/command", data={
        "token": token,
        "user_name": user_id,
        "user_id": user_id,
        "text": text,
    })


# ---- REST ----

def test_add_and_count(client):
    r = client.post("/zoo/add", data={"caller": "trainer", "category": "fish", "count": 5})
    assert r.status_code == 200
    assert r.json() == {"kind": "Added", "category": "fish", "count": 5, "holder": "trainer"}

    r = client.get("/zoo/animal-counts/fish")
    assert r.status_code == 200
    assert r.json() == {"category": "fish", "count": 5}


def test_add_not_trainer(client):
    r = client.post("/zoo/add", data={"caller": "account1", "category": "fish", "count": 5})
    assert r.status_code == 403
    assert r.json()["detail"] == "Not an trainer"


def test_add_unknown_animal(client):
    r = client.post("/zoo/add", data={"caller": "trainer", "category": "none", "count": 5})
    assert r.status_code == 400
    assert r.json()["detail"] == "Invalid animal"


def test_borrow_and_give_back(client):
    client.post("/zoo/add", data={"caller": "trainer", "category": "fish", "count": 5})

    r = client.post("/zoo/borrow", data={"caller": "x", "age": 24, "gender": "male", "category": "fish"})
    assert r.status_code == 200
    assert r.json()["kind"] == "Borrowed"
    assert client.get("/zoo/animal-counts/fish").json()["count"] == 4

    r = client.get("/zoo/loans/x")
    assert r.json() == {"holder": "x", "category": "fish", "age": 24, "gender": "male"}

    r = client.post("/zoo/give-back", data={"caller": "x"})
    assert r.status_code == 200
    assert r.json()["kind"] == "Returned"
    assert client.get("/zoo/animal-counts/fish").json()["count"] == 5
    assert client.get("/zoo/loans/x").status_code == 404


def test_borrow_errors(client):
    client.post("/zoo/add", data={"caller": "trainer", "category": "cat", "count": 5})

    r = client.post("/zoo/borrow", data={"caller": "y", "age": 24, "gender": "female", "category": "cat"})
    assert r.status_code == 400
    assert r.json()["detail"] == "Invalid animal for women under 40"

    r = client.post("/zoo/borrow", data={"caller": "y", "age": 24, "gender": "female", "category": "dog"})
    assert r.status_code == 409
    assert r.json()["detail"] == "Selected animal not available"

    r = client.post("/zoo/borrow", data={"caller": "y", "age": 24, "gender": "robot", "category": "cat"})
    assert r.status_code == 400

    assert client.get("/zoo/inventory").json()["cat"] == 5


def test_give_back_without_loan(client):
    r = client.post("/zoo/give-back", data={"caller": "z"})
    assert r.status_code == 404
    assert r.json()["detail"] == "No borrowed animals"


def test_events_listing(client):
    client.post("/zoo/add", data={"caller": "trainer", "category": "dog", "count": 1})
    client.post("/zoo/borrow", data={"caller": "x", "age": 30, "gender": "male", "category": "dog"})
    events = client.get("/zoo/events").json()
    assert [e["kind"] for e in events] == ["Borrowed", "Added"]


def test_rest_requires_api_token(client):
    from fastapi.testclient import TestClient

    anonymous = TestClient(client.app)
    r = anonymous.post("/zoo/add", data={"caller": "trainer", "category": "fish", "count": 1000})
    assert r.status_code == 403
    r = anonymous.post("/zoo/borrow", data={"caller": "x", "age": 24, "gender": "male", "category": "fish"})
    assert r.status_code == 403
    r = anonymous.post("/zoo/give-back", data={"caller": "x"})
    assert r.status_code == 403

    r = client.post("/zoo/add", data={"caller": "trainer", "category": "fish", "count": 5},
                    headers={"X-API-Token": "wrong"})
    assert r.status_code == 403
    assert client.get("/zoo/animal-counts/fish").json()["count"] == 0


def test_rest_bounds(client):
    r = client.post("/zoo/add", data={"caller": "trainer", "category": "fish", "count": 10**10})
    assert r.status_code == 422
    r = client.post("/zoo/borrow", data={"caller": "x", "age": 10**10, "gender": "male", "category": "fish"})
    assert r.status_code == 422
    assert client.get("/zoo/events", params={"limit": -1}).status_code == 422
    assert client.get("/zoo/events", params={"limit": 0}).status_code == 422


def test_borrow_last_unit_twice(client):
    client.post("/zoo/add", data={"caller": "trainer", "category": "fish", "count": 1})
    client.post("/zoo/borrow", data={"caller": "x", "age": 24, "gender": "male", "category": "fish"})
    r = client.post("/zoo/borrow", data={"caller": "x", "age": 24, "gender": "male", "category": "fish"})
    assert r.status_code == 409
    assert r.json()["detail"] == "Already adopted a animal"


# ---- Mattermost ----

def test_mm_bad_token(client):
    r = mm(client, "현황", token="nope")
    assert r.status_code == 403


def test_mm_flow(client):
    r = mm(client, "추가 물고기 5", user_id="trainer")
    assert r.json()["response_type"] == "in_channel"
    assert "현재 5" in r.json()["text"]

    r = mm(client, "borrow fish 24 male")
    assert r.json()["response_type"] == "in_channel"

    r = mm(client, "대여 물고기 24 남")
    assert r.json()["response_type"] == "ephemeral"
    assert "Already adopted a animal" in r.json()["text"]

    r = mm(client, "status")
    assert "물고기: 4" in r.json()["text"]

    r = mm(client, "반납")
    assert r.json()["response_type"] == "in_channel"
    assert client.get("/zoo/animal-counts/fish").json()["count"] == 5


def test_mm_rejections(client):
    r = mm(client, "add fish 5")
    assert "Not an trainer" in r.json()["text"]

    r = mm(client, "return")
    assert "No borrowed animals" in r.json()["text"]


def test_mm_help(client):
    r = mm(client, "")
    assert r.json()["response_type"] == "ephemeral"
    assert "사용법" in r.json()["text"]


def test_mm_count_out_of_range(client):
    r = mm(client, "add fish 99999999999", user_id="trainer")
    assert r.json()["response_type"] == "ephemeral"
    assert "Invalid count" in r.json()["text"]
