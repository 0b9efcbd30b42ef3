from __future__ import annotations

import itertools
import random

import numpy as np
import pytest

from depthtrack.body_state import JOINTS, POSE6, BodySpec, BodyStateModel
from depthtrack.errors import ConfigurationError


def _mixed_layout() -> BodyStateModel:
    return BodyStateModel(
        [
            BodySpec(name="cup", kind=POSE6, dimension=6),
            BodySpec(name="arm", kind=JOINTS, dimension=3, joint_names=("j0", "j1", "j2")),
            BodySpec(name="box", kind=POSE6, dimension=6),
        ]
    )


def test_layout_offsets_and_slices() -> None:
    layout = _mixed_layout()

    assert layout.body_count == 3
    assert layout.total_dim == 15
    assert layout.body_slice(1) == slice(6, 9)
    assert layout.body_indices(2) == tuple(range(9, 15))
    assert layout.per_body_blocks() == [list(range(0, 6)), [6, 7, 8], list(range(9, 15))]
    assert layout.full_block() == [list(range(15))]
    with pytest.raises(IndexError):
        layout.body_slice(3)


def test_partitions_are_accepted_in_any_order() -> None:
    layout = BodyStateModel.rigid_bodies(["a", "b"])
    rng = random.Random(5)

    for _ in range(20):
        dims = list(range(layout.total_dim))
        rng.shuffle(dims)
        cuts = sorted(rng.sample(range(1, layout.total_dim), rng.randint(0, 5)))
        blocks = [dims[start:stop] for start, stop in zip([0] + cuts, cuts + [layout.total_dim])]

        validated = layout.validate_partition(blocks)

        union = sorted(itertools.chain.from_iterable(validated))
        assert union == list(range(layout.total_dim))
        assert sum(len(block) for block in validated) == layout.total_dim


@pytest.mark.parametrize(
    ("blocks", "message"),
    [
        ([], "must not be empty"),
        ([list(range(12)), []], "is empty"),
        ([list(range(6)), list(range(5, 12))], "more than one"),
        ([list(range(6)), list(range(7, 12))], "uncovered"),
        ([list(range(12)) + [12]], "outside"),
        ([[-1] + list(range(12))], "outside"),
    ],
)
def test_invalid_partitions_are_rejected(blocks: list[list[int]], message: str) -> None:
    layout = BodyStateModel.rigid_bodies(["a", "b"])
    with pytest.raises(ConfigurationError, match=message):
        layout.validate_partition(blocks)


def test_with_body_replaces_only_one_body() -> None:
    layout = _mixed_layout()
    state = np.arange(15, dtype=np.float64)

    updated = layout.with_body(state, 1, np.array([-1.0, -2.0, -3.0]))

    assert state[6] == 6.0
    np.testing.assert_array_equal(updated[6:9], [-1.0, -2.0, -3.0])
    np.testing.assert_array_equal(updated[:6], state[:6])
    np.testing.assert_array_equal(updated[9:], state[9:])
    with pytest.raises(ConfigurationError):
        layout.with_body(state, 0, np.zeros(5))
    with pytest.raises(ConfigurationError):
        layout.check_state(np.zeros(14))


def test_default_state_places_pose_bodies_and_zeroes_joints() -> None:
    layout = _mixed_layout()

    state = layout.default_state((0.0, 0.0, -1.5))

    np.testing.assert_array_equal(state[:6], [0.0, 0.0, -1.5, 0.0, 0.0, 0.0])
    np.testing.assert_array_equal(state[6:9], [0.0, 0.0, 0.0])
    np.testing.assert_array_equal(layout.body_position(state, 2), [0.0, 0.0, -1.5])
    assert layout.pose_body_indices() == [0, 2]


def test_body_transform_and_joint_positions() -> None:
    layout = _mixed_layout()
    state = np.zeros(15)
    state[9:15] = [0.1, 0.2, 1.0, 0.0, 0.0, np.pi / 2.0]
    state[6:9] = [0.5, -0.25, 1.0]

    transform = layout.body_transform(state, 2)

    np.testing.assert_allclose(transform[:3, 3], [0.1, 0.2, 1.0])
    np.testing.assert_allclose(transform[:3, :3] @ [1.0, 0.0, 0.0], [0.0, 1.0, 0.0], atol=1e-12)
    assert layout.joint_positions(state) == {"j0": 0.5, "j1": -0.25, "j2": 1.0}
    assert layout.joint_names() == ["j0", "j1", "j2"]
    with pytest.raises(ValueError):
        layout.body_transform(state, 1)


def test_body_spec_validation() -> None:
    with pytest.raises(ConfigurationError):
        BodySpec(name="x", kind=POSE6, dimension=7)
    with pytest.raises(ConfigurationError):
        BodySpec(name="x", kind="wheel", dimension=1)
    with pytest.raises(ConfigurationError):
        BodySpec(name="x", kind=JOINTS, dimension=2, joint_names=("only_one",))
    with pytest.raises(ConfigurationError):
        BodyStateModel([])
