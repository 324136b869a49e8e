"""
Property-based tests for keyman using Hypothesis.

Tests two core properties with generated inputs:
1. Registry persistence: save(load()) is byte-identical for any registry
2. Name uniqueness: any sequence of adds keeps exactly one pair per name,
   and at most one key is ever active
"""

import string
import tempfile
from pathlib import Path

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

pytestmark = pytest.mark.store

settings.register_profile("keyman", deadline=None, max_examples=50)
settings.load_profile("keyman")

from keyman.engine import ActivationEngine
from keyman.errors import DuplicateName
from keyman.store.key_store import MODE_COPY, KeyStore
from keyman.store.models import KeyPair, Registry


# ============================================================================
# Strategies
# ============================================================================

key_names = st.text(
    alphabet=string.ascii_letters + string.digits + "-_",
    min_size=1,
    max_size=24,
)

unique_names = st.lists(key_names, min_size=0, max_size=8, unique=True)


@st.composite
def registries(draw):
    names = draw(unique_names)
    keys = {}
    for name in names:
        with_public = draw(st.booleans())
        keys[name] = KeyPair(
            name=name,
            private_path=Path("/keys") / name,
            public_path=(Path("/keys") / f"{name}.pub") if with_public else None,
            added_at=draw(st.sampled_from([
                "2025-01-01T00:00:00+00:00", "2026-10-19T12:30:00+00:00",
            ])),
        )
    active = draw(st.one_of(st.none(), st.sampled_from(names))) if names else None
    return Registry(active=active, keys=keys)


# ============================================================================
# Properties
# ============================================================================

@given(registry=registries())
def test_save_load_round_trip(registry):
    with tempfile.TemporaryDirectory() as tmp:
        store = KeyStore(Path(tmp) / "keys.json", Path(tmp) / "ssh" / "id_rsa")
        store.save(registry)
        first = store.registry_path.read_bytes()

        loaded = store.load()
        assert loaded == registry

        store.save(loaded)
        assert store.registry_path.read_bytes() == first


@given(names=st.lists(key_names, min_size=1, max_size=6))
def test_adds_keep_names_unique(names):
    with tempfile.TemporaryDirectory() as tmp:
        root = Path(tmp)
        store = KeyStore(root / "keyman" / "keys.json", root / "ssh" / "id_rsa", mode=MODE_COPY)
        engine = ActivationEngine(store)
        keys_dir = root / "keys"
        keys_dir.mkdir()

        accepted = []
        for i, name in enumerate(names):
            private = keys_dir / f"key{i}"
            private.write_text(f"key {i}\n")
            if name in accepted:
                with pytest.raises(DuplicateName):
                    engine.add(private, name=name)
            else:
                engine.add(private, name=name)
                accepted.append(name)

        listed = [p.name for p in engine.list()]
        assert listed == sorted(accepted)
        assert len(listed) == len(set(listed))

        for name in accepted:
            engine.switch_to(name)
            assert engine.current().name == name
            assert sum(engine.is_active(n) for n in listed) == 1
