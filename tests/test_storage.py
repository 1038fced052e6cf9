import numpy as np
import pytest

from minidiff import ShapeMismatchError, TensorStorage
from minidiff.storage import (
    broadcast_index,
    index_to_position,
    shape_broadcast,
    strides_from_shape,
    to_index,
)


def arange(*shape):
    n = int(np.prod(shape))
    return TensorStorage(np.arange(n, dtype=np.float64), shape)


def test_row_major_strides():
    assert strides_from_shape((2, 3, 4)) == (12, 4, 1)
    assert strides_from_shape(()) == ()


def test_index_round_trip_over_every_position():
    shape = (2, 3, 4)
    strides = strides_from_shape(shape)
    positions = [index_to_position(to_index(i, shape), strides) for i in range(24)]
    assert positions == list(range(24))


@pytest.mark.parametrize(
    "a, b, expected",
    [
        ((3, 1), (1, 4), (3, 4)),
        ((4,), (2, 3, 4), (2, 3, 4)),
        ((), (2, 2), (2, 2)),
        ((5, 1, 3), (4, 1), (5, 4, 3)),
    ],
)
def test_shape_broadcast(a, b, expected):
    assert shape_broadcast(a, b) == expected
    assert shape_broadcast(b, a) == expected


def test_shape_broadcast_mismatch():
    with pytest.raises(ShapeMismatchError):
        shape_broadcast((3, 2), (4, 2))
    with pytest.raises(ValueError):
        shape_broadcast((2,), (3,))


def test_broadcast_index():
    assert broadcast_index([1, 2, 3], (2, 3, 4), (3, 1)) == [2, 0]
    assert broadcast_index([1, 2], (2, 3), ()) == []


def test_from_values_checks_element_count():
    with pytest.raises(ShapeMismatchError):
        TensorStorage.from_values([1.0, 2.0, 3.0], (2, 2))


def test_layout_outside_buffer_is_rejected():
    with pytest.raises(ShapeMismatchError):
        TensorStorage(np.zeros(4), (2, 2), strides=(2, 2))


def test_get_set_and_negative_indices():
    s = arange(2, 3)
    assert s.get((1, 2)) == 5.0
    assert s.get((-1, -1)) == 5.0
    s.set((0, 1), 42.0)
    assert s.storage[1] == 42.0
    with pytest.raises(IndexError):
        s.get((2, 0))
    with pytest.raises(ShapeMismatchError):
        s.get((0,))


def test_permute_shares_storage_and_sees_writes():
    base = arange(2, 3)
    t = base.permute(1, 0)
    assert t.shares_storage(base)
    assert t.shape == (3, 2)
    assert t.strides == (1, 3)
    assert not t.is_contiguous()
    np.testing.assert_array_equal(t.to_numpy(), base.to_numpy().T)

    t.set((2, 1), -1.0)
    assert base.get((1, 2)) == -1.0


def test_contiguous_reshape_is_zero_copy():
    base = arange(2, 6)
    r, copied = base.reshape((3, -1))
    assert not copied
    assert r.shares_storage(base)
    assert r.shape == (3, 4)
    r.set((2, 3), 100.0)
    assert base.get((1, 5)) == 100.0


def test_non_contiguous_reshape_copies():
    t = arange(2, 3).permute(1, 0)
    r, copied = t.reshape((6,))
    assert copied
    assert not r.shares_storage(t)
    assert r.tolist() == [0.0, 3.0, 1.0, 4.0, 2.0, 5.0]


def test_reshape_rejects_wrong_sizes():
    s = arange(2, 3)
    with pytest.raises(ShapeMismatchError):
        s.reshape((4, 2))
    with pytest.raises(ShapeMismatchError):
        s.reshape((-1, -1))


def test_expand_uses_zero_strides_and_is_read_only():
    base = arange(3, 1)
    e = base.expand((2, 3, 4))
    assert e.shares_storage(base)
    assert e.strides == (0, 1, 0)
    assert not e.writeable
    np.testing.assert_array_equal(e.to_numpy(), np.broadcast_to(base.to_numpy(), (2, 3, 4)))
    with pytest.raises(ShapeMismatchError):
        base.expand((3, 2, 5))


def test_writing_to_broadcast_layout_detaches_it():
    base = arange(1, 3)
    e = base.expand((2, 3))
    e.set((0, 0), 9.0)
    assert e.writeable
    assert not e.shares_storage(base)
    assert base.get((0, 0)) == 0.0
    assert e.tolist() == [[9.0, 1.0, 2.0], [0.0, 1.0, 2.0]]


def test_slice_view():
    base = arange(4, 5)
    s = base.slice((slice(1, 3), slice(None, None, 2)))
    assert s.shares_storage(base)
    assert s.shape == (2, 3)
    np.testing.assert_array_equal(s.to_numpy(), base.to_numpy()[1:3, ::2])

    row = base.slice(2)
    assert row.shape == (5,)
    assert row.is_contiguous()
    assert row.tolist() == [10.0, 11.0, 12.0, 13.0, 14.0]

    with pytest.raises(ShapeMismatchError):
        base.slice((slice(None, None, -1),))


def test_size_one_dimensions_do_not_break_contiguity():
    s = TensorStorage(np.arange(3.0), (3, 1), strides=(1, 7))
    assert s.is_contiguous()


def test_copy_and_contiguous():
    t = arange(2, 3).permute(1, 0)
    c, copied = t.contiguous()
    assert copied and c.is_contiguous()
    np.testing.assert_array_equal(c.to_numpy(), t.to_numpy())
    same, copied = c.contiguous()
    assert same is c and not copied


def test_to_numpy_is_read_only_by_default():
    s = arange(2, 2)
    with pytest.raises(ValueError):
        s.to_numpy()[0, 0] = 1.0
    s.to_numpy(writeable=True)[0, 0] = 7.0
    assert s.get((0, 0)) == 7.0
    with pytest.raises(ValueError):
        s.expand((3, 2, 2)).to_numpy(writeable=True)


def test_indices_are_row_major():
    s = arange(2, 2)
    assert list(s.indices()) == [(0, 0), (0, 1), (1, 0), (1, 1)]
    assert [s.get(i) for i in s.indices()] == [0.0, 1.0, 2.0, 3.0]
