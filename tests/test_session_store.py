from chatsync.services.session_store import SessionStore


def test_save_and_get_cookie(session_store):
    assert session_store.get() is None
    assert not session_store.has_session()

    session_store.save("connect.sid=abc")

    assert session_store.get() == "connect.sid=abc"
    assert session_store.has_session()


def test_user_id_lives_next_to_cookie(session_store):
    session_store.save("connect.sid=abc")
    session_store.save_user_id("u1")

    assert session_store.get() == "connect.sid=abc"
    assert session_store.get_user_id() == "u1"


def test_survives_new_instance(tmp_path):
    path = str(tmp_path / "nested" / "session.json")
    SessionStore(path).save("connect.sid=abc")

    assert SessionStore(path).get() == "connect.sid=abc"


def test_clear_removes_everything(session_store):
    session_store.save("connect.sid=abc")
    session_store.save_user_id("u1")

    session_store.clear()

    assert session_store.get() is None
    assert session_store.get_user_id() is None
    # Limpiar dos veces no falla
    session_store.clear()


def test_corrupt_file_reads_as_empty(tmp_path):
    path = tmp_path / "session.json"
    path.write_text("{no es json", encoding="utf-8")

    store = SessionStore(str(path))

    assert store.get() is None
    store.save("connect.sid=new")
    assert store.get() == "connect.sid=new"
