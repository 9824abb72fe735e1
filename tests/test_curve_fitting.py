import numpy as np
import pytest

from slamkit.curve_fitting import (
    FitResult,
    curve,
    gauss_newton,
    generate_data,
    levenberg_marquardt,
    main,
)


def test_generate_data_noiseless_matches_curve():
    x, y = generate_data(1.0, 2.0, 1.0, 100, 0.0, 0)
    assert x.shape == (100,)
    assert np.allclose(x, np.arange(100) / 100.0)
    assert np.allclose(y, curve((1.0, 2.0, 1.0), x))


def test_generate_data_is_deterministic_for_seed():
    _, y1 = generate_data(seed=3)
    _, y2 = generate_data(seed=3)
    _, y3 = generate_data(seed=4)
    assert np.array_equal(y1, y2)
    assert not np.array_equal(y1, y3)


def test_curve_at_zero_is_exp_c():
    assert np.isclose(curve((5.0, -3.0, 1.0), 0.0), np.e)


def test_gauss_newton_recovers_noiseless_parameters():
    x, y = generate_data(1.0, 2.0, 1.0, 100, 0.0, 0)
    result = gauss_newton(x, y, (2.0, -1.0, 5.0))
    assert isinstance(result, FitResult)
    assert np.allclose(result.params, [1.0, 2.0, 1.0], atol=1e-4)
    assert result.cost < 1e-6


def test_levenberg_marquardt_recovers_noiseless_parameters():
    x, y = generate_data(1.0, 2.0, 1.0, 100, 0.0, 0)
    result = levenberg_marquardt(x, y, (2.0, -1.0, 5.0), iterations=200)
    assert np.allclose(result.params, [1.0, 2.0, 1.0], atol=1e-4)


def test_methods_agree_on_noisy_data():
    x, y = generate_data(seed=1)
    initial = (2.0, -1.0, 5.0)
    gn = gauss_newton(x, y, initial)
    lm = levenberg_marquardt(x, y, initial, iterations=200)
    start_cost = float(np.sum((y - curve(initial, x)) ** 2))
    assert gn.cost < start_cost
    assert lm.cost < start_cost
    assert np.allclose(gn.params, lm.params, atol=1e-3)


def test_iterations_are_bounded():
    x, y = generate_data(seed=2)
    result = gauss_newton(x, y, (2.0, -1.0, 5.0), iterations=2)
    assert result.iterations <= 2


def test_invalid_sigma_raises():
    x, y = generate_data(seed=0)
    with pytest.raises(ValueError):
        gauss_newton(x, y, (2.0, -1.0, 5.0), sigma=0.0)
    with pytest.raises(ValueError):
        levenberg_marquardt(x, y, (2.0, -1.0, 5.0), sigma=-1.0)


def test_mismatched_lengths_raise():
    with pytest.raises(ValueError):
        gauss_newton([0.0, 0.1], [1.0], (1.0, 1.0, 1.0))


def test_main_prints_estimate(capsys):
    assert main(["--method", "levenberg-marquardt", "--iterations", "100"]) == 0
    out = capsys.readouterr().out
    assert "estimated abc = " in out