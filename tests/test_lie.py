import math

import numpy as np
import pytest

from slamkit.lie import SE3, SO3, hat, vee


@pytest.fixture
def rng():
    return np.random.default_rng(7)


def _random_rotvec(rng):
    v = rng.normal(size=3)
    return v / np.linalg.norm(v) * rng.uniform(0.1, 3.0)


def test_hat_is_skew_and_vee_inverts(rng):
    v = rng.normal(size=3)
    m = hat(v)
    assert np.allclose(m, -m.T)
    assert np.allclose(m @ v, 0.0)
    assert np.allclose(vee(m), v)


def test_hat_vee_six_vector(rng):
    xi = rng.normal(size=6)
    assert np.allclose(vee(hat(xi)), xi)


def test_hat_rejects_wrong_size():
    with pytest.raises(ValueError):
        hat([1.0, 2.0])
    with pytest.raises(ValueError):
        vee(np.zeros((2, 2)))


def test_so3_exp_quarter_turn_about_z():
    r = SO3.exp([0.0, 0.0, math.pi / 2])
    assert np.allclose(r @ np.array([1.0, 0.0, 0.0]), [0.0, 1.0, 0.0])


def test_so3_exp_log_round_trip(rng):
    for _ in range(20):
        omega = _random_rotvec(rng)
        assert np.allclose(SO3.exp(omega).log(), omega, atol=1e-9)


def test_so3_small_angle_log(rng):
    omega = rng.normal(size=3) * 1e-12
    assert np.allclose(SO3.exp(omega).log(), omega, atol=1e-18)


def test_so3_is_orthonormal(rng):
    m = SO3.exp(_random_rotvec(rng)).matrix
    assert np.allclose(m @ m.T, np.eye(3))
    assert np.isclose(np.linalg.det(m), 1.0)


def test_quaternion_round_trip(rng):
    q = rng.normal(size=4)
    q /= np.linalg.norm(q)
    back = SO3.from_quaternion(*q).unit_quaternion()
    assert np.allclose(back, q) or np.allclose(back, -q)
    assert back[0] >= 0


def test_quaternion_is_normalised():
    a = SO3.from_quaternion(2.0, 0.0, 0.0, 0.0).matrix
    assert np.allclose(a, np.eye(3))


def test_zero_quaternion_raises():
    with pytest.raises(ValueError):
        SO3.from_quaternion(0.0, 0.0, 0.0, 0.0)


def test_so3_inverse(rng):
    r = SO3.exp(_random_rotvec(rng))
    assert np.allclose((r @ r.inverse()).matrix, np.eye(3))


def test_se3_exp_log_round_trip(rng):
    for _ in range(20):
        xi = np.concatenate([rng.normal(size=3), _random_rotvec(rng)])
        assert np.allclose(SE3.exp(xi).log(), xi, atol=1e-9)


def test_se3_inverse_composes_to_identity(rng):
    t = SE3.exp(np.concatenate([rng.normal(size=3), _random_rotvec(rng)]))
    assert np.allclose((t @ t.inverse()).matrix(), np.eye(4))
    assert np.allclose((t.inverse() @ t).log(), 0.0, atol=1e-9)


def test_se3_act_matches_matrix(rng):
    t = SE3.exp(np.concatenate([rng.normal(size=3), _random_rotvec(rng)]))
    p = rng.normal(size=3)
    expected = (t.matrix() @ np.append(p, 1.0))[:3]
    assert np.allclose(t @ p, expected)
    pts = rng.normal(size=(5, 3))
    assert np.allclose(t.act(pts), [t.act(x) for x in pts])


def test_matrix3x4_is_top_of_matrix(rng):
    t = SE3.exp(rng.normal(size=6))
    assert np.allclose(t.matrix3x4(), t.matrix()[:3, :])


def test_adjoint_property(rng):
    t = SE3.exp(np.concatenate([rng.normal(size=3), _random_rotvec(rng)]))
    xi = rng.normal(size=6) * 0.3
    lhs = t @ SE3.exp(xi) @ t.inverse()
    rhs = SE3.exp(t.adjoint() @ xi)
    assert np.allclose(lhs.matrix(), rhs.matrix(), atol=1e-9)


def test_composition_is_associative(rng):
    a, b, c = (SE3.exp(rng.normal(size=6)) for _ in range(3))
    assert np.allclose(((a @ b) @ c).matrix(), (a @ (b @ c)).matrix())


def test_from_quaternion_translation():
    t = SE3.from_quaternion(1.0, 0.0, 0.0, 0.0, [1.0, 2.0, 3.0])
    assert np.allclose(t.act([0.0, 0.0, 0.0]), [1.0, 2.0, 3.0])


def test_se3_rejects_bad_translation():
    with pytest.raises(ValueError):
        SE3(None, [1.0, 2.0])