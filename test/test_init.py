"""Initial testing module."""

import ambient_id


def test_version() -> None:
    version = getattr(ambient_id, "__version__", None)
    assert version is not None
    assert isinstance(version, str)


def test_exports() -> None:
    for name in ambient_id.__all__:
        assert hasattr(ambient_id, name)
