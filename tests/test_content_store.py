import pytest

from newsline.content_store import ContentMissingError, FileContentStore, content_key


def test_put_and_get_json(tmp_path):
    store = FileContentStore(str(tmp_path / "content"))
    key = content_key(42)
    assert key == "content/article_42.json"

    store.put_json(key, {"title": "Hello", "content": "Body"})
    assert store.exists(key)
    assert store.get_json(key) == {"title": "Hello", "content": "Body"}

    store.put_json(key, {"title": "Updated"})
    assert store.get_json(key) == {"title": "Updated"}
    assert [path.name for path in (tmp_path / "content" / "content").iterdir()] == [
        "article_42.json"
    ]


def test_missing_key_raises(tmp_path):
    store = FileContentStore(str(tmp_path))
    with pytest.raises(ContentMissingError):
        store.get_json("content/article_1.json")
    assert store.exists("content/article_1.json") is False
    assert store.delete("content/article_1.json") is False


@pytest.mark.parametrize(
    "key",
    ["", "/etc/passwd", "../secrets.json", "content/../../x.json", "content//a.json", "a\\b.json"],
)
def test_rejects_unsafe_keys(tmp_path, key):
    store = FileContentStore(str(tmp_path))
    with pytest.raises(ValueError):
        store.put_json(key, {})


def test_delete(tmp_path):
    store = FileContentStore(str(tmp_path))
    store.put_json("summaries/article_3.json", {"summary": "s"})
    assert store.delete("summaries/article_3.json") is True
    assert not store.exists("summaries/article_3.json")
