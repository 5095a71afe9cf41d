import zipfile

from conftest import write


def test_compress_list_extract(client, root_dir):
    write(root_dir, "site/index.html", "<h1>hi</h1>")

    res = client.post("/api/archive/compress", json={"paths": ["site"]})
    assert res.status_code == 200
    assert res.get_json()["item"]["path"] == "site.zip"

    entries = client.get("/api/archive/contents", query_string={"path": "site.zip"}).get_json()["entries"]
    assert "site/index.html" in [e["name"] for e in entries]

    (root_dir / "restore").mkdir()
    res = client.post("/api/archive/extract", json={"path": "site.zip", "target": "restore"})
    assert res.status_code == 200
    assert res.get_json()["extracted"] == 1
    assert (root_dir / "restore" / "site" / "index.html").read_text() == "<h1>hi</h1>"


def test_zip_slip_is_rejected(client, root_dir):
    with zipfile.ZipFile(str(root_dir / "evil.zip"), "w") as zf:
        zf.writestr("../../outside.txt", "x")

    res = client.post("/api/archive/extract", json={"path": "evil.zip"})

    assert res.status_code == 403
    assert res.get_json()["error"] == "path_escape"
    assert sorted(p.name for p in root_dir.iterdir()) == ["evil.zip"]


def test_activity_endpoints(client):
    client.post("/api/fs/create", json={"name": "a", "type": "folder"})
    client.post("/api/fs/create", json={"name": "b.txt"})

    data = client.get("/api/activity", query_string={"limit": 1}).get_json()
    assert data["total"] == 2
    assert data["totalPages"] == 2
    assert data["logs"][0]["targetName"] == "b.txt"
    assert data["logs"][0]["extra"]["ip"]

    res = client.post("/api/activity/cleanup", json={"days": 1})
    assert res.get_json()["removed"] == 0
