"""
Tests for shape and stride algebra.
"""

import pytest


class TestRowMajorStrides:
    """Row-major: the last dimension is contiguous."""

    def test_strides_of_3d_shape(self):
        from nxml.shape import row_major_strides

        assert row_major_strides((2, 3, 4)) == (12, 4, 1)

    def test_strides_of_vector(self):
        from nxml.shape import row_major_strides

        assert row_major_strides((7,)) == (1,)

    def test_flat_offset_walks_buffer_in_order(self):
        """Iterating indices in row-major order visits offsets 0, 1, 2, ..."""
        from nxml.shape import flat_offset

        shape = (2, 3, 2)
        offsets = [
            flat_offset((i, j, k), shape)
            for i in range(2)
            for j in range(3)
            for k in range(2)
        ]
        assert offsets == list(range(12))


class TestCanonicalShape:
    def test_pads_on_the_left(self):
        from nxml.shape import canonical_shape

        assert canonical_shape((3, 5)) == (1, 1, 3, 5)
        assert canonical_shape((6,)) == (1, 1, 1, 6)

    def test_full_rank_unchanged(self):
        from nxml.shape import canonical_shape

        assert canonical_shape((2, 3, 4, 5)) == (2, 3, 4, 5)

    def test_padding_preserves_element_count(self):
        from nxml.shape import canonical_shape, num_elements

        assert num_elements(canonical_shape((4, 9))) == num_elements((4, 9))


class TestValidateShape:
    def test_accepts_list(self):
        from nxml.shape import validate_shape

        assert validate_shape([2, 3]) == (2, 3)

    @pytest.mark.parametrize("shape", [(), (0, 3), (2, -1), (1, 2, 3, 4, 5)])
    def test_rejects_invalid_shapes(self, shape):
        from nxml.errors import InvalidShapeError
        from nxml.shape import validate_shape

        with pytest.raises(InvalidShapeError):
            validate_shape(shape)
