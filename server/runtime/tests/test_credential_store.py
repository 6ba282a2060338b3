import pytest
from sqlalchemy.orm import sessionmaker

from wa_sender.database import init_db, make_engine
from wa_sender.errors import StorageError, ValidationError
from wa_sender.services.credential_store import (
    CredentialBundle,
    DatabaseCredentialStore,
    FileCredentialStore,
)


BLOB = b'{"noiseKey": "abc"}\x00\xff\xfe binary tail'


def test_file_store_round_trips_bytes(credential_store):
    assert credential_store.load() is None

    credential_store.save(CredentialBundle("default", BLOB))

    loaded = credential_store.load()
    assert loaded == CredentialBundle("default", BLOB)
    assert credential_store.path.name == "creds.json"
    assert not credential_store.path.with_suffix(".json.tmp").exists()


def test_file_store_overwrites_previous_snapshot(credential_store):
    credential_store.save(CredentialBundle("default", b"first"))
    credential_store.save(CredentialBundle("default", b"second"))

    assert credential_store.load().blob == b"second"


def test_file_store_keys_by_device(tmp_path):
    one = FileCredentialStore(str(tmp_path), "phone-one")
    two = FileCredentialStore(str(tmp_path), "phone-two")
    one.save(CredentialBundle("phone-one", b"one"))

    assert two.load() is None
    assert one.load().blob == b"one"


def test_import_external_seeds_store(credential_store):
    credential_store.import_external(BLOB)

    assert credential_store.load().blob == BLOB


def test_import_external_rejects_empty_blob(credential_store):
    with pytest.raises(ValidationError):
        credential_store.import_external(b"")
    assert credential_store.load() is None


def test_file_store_save_failure_raises_storage_error(tmp_path):
    blocker = tmp_path / "auth"
    blocker.write_text("not a directory")
    store = FileCredentialStore(str(blocker), "default")

    with pytest.raises(StorageError):
        store.save(CredentialBundle("default", b"x"))


def test_file_store_load_failure_raises_storage_error(tmp_path, monkeypatch):
    store = FileCredentialStore(str(tmp_path), "default")
    store.save(CredentialBundle("default", b"x"))

    def _broken(self):
        raise PermissionError("denied")

    monkeypatch.setattr(type(store.path), "read_bytes", _broken)
    with pytest.raises(StorageError):
        store.load()


@pytest.fixture
def db_store(tmp_path):
    engine = make_engine(f"sqlite:///{tmp_path / 'creds.db'}")
    init_db(engine)
    factory = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    yield DatabaseCredentialStore(factory, "default")
    engine.dispose()


def test_database_store_round_trips_bytes(db_store):
    assert db_store.load() is None

    db_store.save(CredentialBundle("default", BLOB))
    assert db_store.load() == CredentialBundle("default", BLOB)

    db_store.save(CredentialBundle("default", b"rotated"))
    assert db_store.load().blob == b"rotated"


def test_database_store_import_external(db_store):
    db_store.import_external(b"backup")

    assert db_store.load().blob == b"backup"
