from __future__ import annotations

from settlement_engine.services.worker_ids import WorkerIdNormalizer


def test_strip_removes_configured_prefix_case_insensitively() -> None:
    normalizer = WorkerIdNormalizer(strip_prefix="suanlibao.")

    assert normalizer.strip("suanlibao.alice") == "alice"
    assert normalizer.strip("  SuanLiBao.bob  ") == "bob"
    assert normalizer.strip("carol") == "carol"


def test_strip_returns_none_when_nothing_remains() -> None:
    normalizer = WorkerIdNormalizer()

    assert normalizer.strip("suanlibao.") is None
    assert normalizer.strip("   ") is None
    assert normalizer.strip(None) is None


def test_has_prefix() -> None:
    normalizer = WorkerIdNormalizer()

    assert normalizer.has_prefix("suanlibao.rig") is True
    assert normalizer.has_prefix("rig.suanlibao") is False
    assert WorkerIdNormalizer(strip_prefix="").has_prefix("suanlibao.rig") is False


def test_base_id_cuts_at_first_separator() -> None:
    assert WorkerIdNormalizer.base_id("alice.rig1") == "alice"
    assert WorkerIdNormalizer.base_id("alice:rig1.gpu0") == "alice"
    assert WorkerIdNormalizer.base_id("alice/rig1") == "alice"
    assert WorkerIdNormalizer.base_id("alice") == "alice"


def test_base_id_keeps_id_when_separator_leads() -> None:
    assert WorkerIdNormalizer.base_id(".hidden") == ".hidden"
    assert WorkerIdNormalizer.base_id(None) is None
