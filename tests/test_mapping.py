import logging

import pytest

from conftest import FakeInspector, FakeSegment
from profsym.mapping import is_vdso, new_mapping_table
from profsym.profile import Location, Mapping, Profile


def _profile(*mappings: Mapping, referenced=None) -> Profile:
    referenced = list(mappings) if referenced is None else referenced
    locations = [Location(id=i + 1, address=m.start + 0x10, mapping=m) for i, m in enumerate(referenced)]
    return Profile(mappings=list(mappings), locations=locations)


def test_opens_referenced_mappings_only():
    used = Mapping(id=1, start=0x1000, file="/bin/app")
    unused = Mapping(id=2, start=0x5000, file="/lib/libunused.so")
    prof = _profile(used, unused, referenced=[used])
    obj = FakeInspector({"/bin/app": FakeSegment({}), "/lib/libunused.so": FakeSegment({})})

    with new_mapping_table(prof, obj) as mt:
        assert used in mt
        assert unused not in mt
    assert obj.opened == ["/bin/app"]


@pytest.mark.parametrize("flag", ["has_functions", "has_filenames", "has_line_numbers"])
def test_already_symbolized_skipped_unless_forced(flag):
    m = Mapping(id=1, file="/bin/app", **{flag: True})
    prof = _profile(m)
    obj = FakeInspector({"/bin/app": FakeSegment({})})

    with new_mapping_table(prof, obj) as mt:
        assert len(mt) == 0
    with new_mapping_table(prof, obj, force=True) as mt:
        assert len(mt) == 1


def test_inline_flag_alone_does_not_count_as_symbolized():
    m = Mapping(id=1, file="/bin/app", has_inline_frames=True)
    obj = FakeInspector({"/bin/app": FakeSegment({})})
    with new_mapping_table(_profile(m), obj) as mt:
        assert len(mt) == 1


def test_missing_main_binary_warns(caplog):
    prof = _profile(Mapping(id=1, file=""))
    with caplog.at_level(logging.WARNING):
        with new_mapping_table(prof, FakeInspector()) as mt:
            assert len(mt) == 0
    messages = " ".join(r.getMessage() for r in caplog.records)
    assert "Main binary filename not available" in messages
    assert "Some binary filenames not available" not in messages


def test_missing_other_binaries_aggregate_warning(caplog):
    main = Mapping(id=1, file="/bin/app")
    a = Mapping(id=2, start=0x10000, file="")
    b = Mapping(id=3, start=0x20000, file="")
    prof = _profile(main, a, b)
    obj = FakeInspector({"/bin/app": FakeSegment({})})

    with caplog.at_level(logging.WARNING):
        with new_mapping_table(prof, obj) as mt:
            assert len(mt) == 1
    aggregate = [r for r in caplog.records if "Symbolization may be incomplete" in r.getMessage()]
    assert len(aggregate) == 1


@pytest.mark.parametrize("path", ["[vdso]", "/x/linux-vdso.so.1"])
def test_vdso_skipped(path):
    assert is_vdso(path)
    obj = FakeInspector()
    with new_mapping_table(_profile(Mapping(id=1, file=path)), obj) as mt:
        assert len(mt) == 0
    assert obj.opened == []


def test_open_failure_skips_only_that_mapping(caplog):
    good = Mapping(id=1, file="/bin/app")
    bad = Mapping(id=2, start=0x9000, file="/lib/libgone.so")
    obj = FakeInspector({"/bin/app": FakeSegment({})})

    with caplog.at_level(logging.WARNING):
        with new_mapping_table(_profile(good, bad), obj) as mt:
            assert good in mt
            assert bad not in mt
    assert any("libgone.so" in r.getMessage() for r in caplog.records)


def test_build_id_mismatch_closes_segment(caplog):
    m = Mapping(id=1, file="/bin/app", build_id="aaaa")
    seg = FakeSegment({}, build_id="bbbb")

    with caplog.at_level(logging.WARNING):
        with new_mapping_table(_profile(m), FakeInspector({"/bin/app": seg})) as mt:
            assert len(mt) == 0
    assert seg.close_count == 1
    assert any("build ID mismatch" in r.getMessage() for r in caplog.records)


@pytest.mark.parametrize("profile_id, binary_id", [("", "bbbb"), ("aaaa", ""), ("aaaa", "aaaa")])
def test_build_id_checked_only_when_both_known(profile_id, binary_id):
    m = Mapping(id=1, file="/bin/app", build_id=profile_id)
    with new_mapping_table(_profile(m), FakeInspector({"/bin/app": FakeSegment({}, build_id=binary_id)})) as mt:
        assert len(mt) == 1


def test_segments_closed_once_on_exit():
    a = Mapping(id=1, file="/bin/app")
    b = Mapping(id=2, start=0x8000, file="/lib/libc.so.6")
    segs = {"/bin/app": FakeSegment({}), "/lib/libc.so.6": FakeSegment({})}

    mt = new_mapping_table(_profile(a, b), FakeInspector(segs))
    with mt:
        pass
    mt.close()
    assert [s.close_count for s in segs.values()] == [1, 1]


def test_segments_closed_when_build_fails():
    a = Mapping(id=1, file="/bin/app")
    b = Mapping(id=2, start=0x8000, file="/lib/libc.so.6")
    seg = FakeSegment({})

    class Exploding(FakeInspector):
        def open(self, path, start, limit, offset):
            if path == "/lib/libc.so.6":
                raise RuntimeError("inspector crashed")
            return seg

    with pytest.raises(RuntimeError):
        new_mapping_table(_profile(a, b), Exploding())
    assert seg.close_count == 1


def test_segments_closed_on_error_inside_pass():
    m = Mapping(id=1, file="/bin/app")
    seg = FakeSegment({})

    with pytest.raises(KeyError):
        with new_mapping_table(_profile(m), FakeInspector({"/bin/app": seg})):
            raise KeyError("boom")
    assert seg.close_count == 1


def test_mappings_sharing_an_id_get_their_own_segments():
    app = Mapping(id=1, start=0x1000, file="/bin/app")
    libc = Mapping(id=1, start=0x7000, file="/lib/libc.so.6")
    prof = _profile(app, libc)
    app_seg, libc_seg = FakeSegment({}), FakeSegment({})
    obj = FakeInspector({"/bin/app": app_seg, "/lib/libc.so.6": libc_seg})

    with new_mapping_table(prof, obj) as mt:
        assert len(mt) == 2
        assert mt.get(app) is app_seg
        assert mt.get(libc) is libc_seg

    assert (app_seg.close_count, libc_seg.close_count) == (1, 1)
