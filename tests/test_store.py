import pytest

from pdf_workbench.errors import InvalidArgumentError, NotFoundError
from pdf_workbench.primitives import PDFName, PDFReference, PDFStream
from pdf_workbench.store import ObjectStore


def test_put_get_replace():
    store = ObjectStore()
    first = store.put({"A": 1})
    second = store.put([1, 2])
    assert first == PDFReference(1, 0)
    assert second == PDFReference(2, 0)
    assert store.get(1) == {"A": 1}

    store.replace(2, [3])
    assert store.resolve(second) == [3]
    assert len(store) == 2


def test_get_missing_raises_not_found():
    store = ObjectStore()
    with pytest.raises(NotFoundError):
        store.get(7)
    with pytest.raises(NotFoundError):
        store.replace(7, None)
    with pytest.raises(NotFoundError):
        store.delete(7)


def test_insert_rejects_non_positive_id():
    with pytest.raises(InvalidArgumentError):
        ObjectStore().insert(0, {})


def test_delete_bumps_generation_and_reuses_slot():
    store = ObjectStore()
    old = store.put({"Old": True})
    store.put({})
    store.delete(old.obj_id)

    reused = store.put({"New": True})
    assert reused == PDFReference(old.obj_id, 1)
    assert store.is_live(reused)
    assert not store.is_live(old)
    assert store.resolve(old) is None
    assert store.resolve(reused) == {"New": True}


def test_reachable_handles_cycles_and_dangling_edges():
    store = ObjectStore()
    a = store.put({})
    b = store.put({"Next": a, "Missing": PDFReference(99)})
    store.get(a.obj_id)["Next"] = b
    orphan = store.put({"Orphan": True})
    store.mark_root(a.obj_id)

    assert store.reachable() == {a.obj_id, b.obj_id}
    assert orphan.obj_id not in store.reachable()


def test_compact_sweeps_unreachable():
    store = ObjectStore()
    root = store.put({"Kid": None})
    kid = store.put({"Value": 1})
    store.get(root.obj_id)["Kid"] = kid
    store.put({"Orphan": True})
    store.mark_root(root.obj_id)

    result = store.compact(sweep=True)
    assert result.removed == 1
    assert set(result.store.ids()) == {root.obj_id, kid.obj_id}
    assert result.store.roots == {root.obj_id}


def test_compact_without_sweep_is_a_copy():
    store = ObjectStore()
    ref = store.put({"A": [1, 2]})
    copy = store.copy()
    copy.get(ref.obj_id)["A"].append(3)
    assert store.get(ref.obj_id) == {"A": [1, 2]}


def test_dedup_merges_identical_dictionaries_and_streams():
    store = ObjectStore()
    font1 = store.put({"Type": PDFName("Font"), "BaseFont": PDFName("Helvetica")})
    font2 = store.put({"BaseFont": PDFName("Helvetica"), "Type": PDFName("Font")})
    data1 = store.put(PDFStream({"Filter": PDFName("FlateDecode")}, b"xyz"))
    data2 = store.put(PDFStream({"Filter": PDFName("FlateDecode")}, b"xyz"))
    other = store.put(PDFStream({"Filter": PDFName("FlateDecode")}, b"abc"))
    root = store.put({"Refs": [font1, font2, data1, data2, other]})
    store.mark_root(root.obj_id)

    result = store.compact(dedup=True)
    assert result.merged == 2
    assert result.remap[font2.obj_id] == result.remap[font1.obj_id]
    assert result.remap[data2.obj_id] == result.remap[data1.obj_id]
    assert result.remap[other.obj_id] != result.remap[data1.obj_id]
    refs = result.store.get(result.remap[root.obj_id])["Refs"]
    assert refs[0] == refs[1]


def test_dedup_compares_cycles_by_structure():
    store = ObjectStore()
    ids = []
    for _ in range(2):
        a = store.put({"Name": PDFName("A")})
        b = store.put({"Name": PDFName("B"), "Peer": a})
        store.get(a.obj_id)["Peer"] = b
        ids.append((a, b))
    root = store.put({"Kids": [ids[0][0], ids[1][0]]})
    store.mark_root(root.obj_id)

    result = store.compact(dedup=True)
    assert result.merged == 2
    assert result.remap[ids[0][0].obj_id] == result.remap[ids[1][0].obj_id]
    assert result.remap[ids[0][1].obj_id] == result.remap[ids[1][1].obj_id]


def test_dedup_never_merges_pages():
    store = ObjectStore()
    page1 = store.put({"Type": PDFName("Page"), "MediaBox": [0, 0, 10, 10]})
    page2 = store.put({"Type": PDFName("Page"), "MediaBox": [0, 0, 10, 10]})
    root = store.put({"Type": PDFName("Pages"), "Kids": [page1, page2], "Count": 2})
    store.mark_root(root.obj_id)

    result = store.compact(dedup=True)
    assert result.merged == 0
    assert len(result.store) == 3


def test_renumber_is_dense_with_generation_zero():
    store = ObjectStore()
    refs = [store.put({"N": i}) for i in range(5)]
    store.delete(refs[1].obj_id)
    reused = store.put({"N": 10})
    assert reused.generation == 1
    store.delete(refs[3].obj_id)
    root = store.put({"All": [refs[0], reused, refs[2], refs[4]]})
    store.mark_root(root.obj_id)

    result = store.compact(renumber=True)
    assert result.store.ids() == list(range(1, len(result.store) + 1))
    assert all(generation == 0 for _, generation, _ in result.store.items())
    all_refs = result.store.get(result.remap[root.obj_id])["All"]
    assert [result.store.get(ref.obj_id)["N"] for ref in all_refs] == [0, 10, 2, 4]


def test_compact_drops_dangling_references():
    store = ObjectStore()
    root = store.put({"Gone": PDFReference(42)})
    store.mark_root(root.obj_id)
    result = store.compact()
    assert result.store.get(result.remap[root.obj_id]) == {"Gone": None}
    assert result.dangling == 1
