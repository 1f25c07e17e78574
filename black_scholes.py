"""
Black-Scholes pricing for European options.

Pure functions: prices, Greeks and an implied volatility solver. No I/O, no state.
"""

import numpy as np
from scipy.stats import norm

from models import BlackScholesResult, Greeks

MIN_IV = 0.01
MAX_IV = 5.0

DAYS_PER_YEAR = 365

# Abramowitz and Stegun 7.1.26 coefficients (error < 7.5e-8)
_A1 = 0.254829592
_A2 = -0.284496736
_A3 = 1.421413741
_A4 = -1.453152027
_A5 = 1.061405429
_P = 0.3275911


def norm_cdf(x: float) -> float:
    """Standard normal CDF via the Abramowitz-Stegun rational approximation"""
    sign = -1.0 if x < 0 else 1.0
    # 7.1.26 approximates erf; Phi(x) = (1 + erf(x / sqrt 2)) / 2
    z = abs(x) / np.sqrt(2.0)

    t = 1.0 / (1.0 + _P * z)
    y = 1.0 - ((((_A5 * t + _A4) * t + _A3) * t + _A2) * t + _A1) * t * np.exp(-z * z)

    return float(0.5 * (1.0 + sign * y))


def norm_pdf(x: float) -> float:
    return float(norm.pdf(x))


def _d1_d2(S: float, K: float, T: float, r: float, sigma: float):
    sqrt_t = np.sqrt(T)
    d1 = (np.log(S / K) + (r + 0.5 * sigma ** 2) * T) / (sigma * sqrt_t)
    d2 = d1 - sigma * sqrt_t
    return float(d1), float(d2)


def black_scholes(S: float, K: float, T: float, r: float, sigma: float) -> BlackScholesResult:
    """
    Call and put prices for spot S, strike K, T years to expiry,
    risk-free rate r and annualized volatility sigma.
    """
    # At or past expiry
    if T <= 0:
        return BlackScholesResult(
            call_price=max(0.0, S - K),
            put_price=max(0.0, K - S),
            d1=0.0,
            d2=0.0
        )

    # No volatility: discounted intrinsic
    if sigma <= 0:
        pv = K * np.exp(-r * T)
        return BlackScholesResult(
            call_price=float(max(0.0, S - pv)),
            put_price=float(max(0.0, pv - S)),
            d1=float('inf'),
            d2=float('inf')
        )

    d1, d2 = _d1_d2(S, K, T, r, sigma)
    discount = np.exp(-r * T)

    call_price = S * norm_cdf(d1) - K * discount * norm_cdf(d2)
    put_price = K * discount * norm_cdf(-d2) - S * norm_cdf(-d1)

    return BlackScholesResult(
        call_price=float(call_price),
        put_price=float(put_price),
        d1=d1,
        d2=d2
    )


def calculate_greeks(S: float, K: float, T: float, r: float, sigma: float,
                     is_put: bool) -> Greeks:
    """Delta, gamma, theta per day, vega per 1% vol, rho per 1% rate"""
    if T <= 0 or sigma <= 0:
        return Greeks(delta=-1.0 if is_put else 1.0, gamma=0.0, theta=0.0, vega=0.0, rho=0.0)

    sqrt_t = np.sqrt(T)
    d1, d2 = _d1_d2(S, K, T, r, sigma)
    discount = np.exp(-r * T)
    pdf_d1 = norm_pdf(d1)
    nd1 = norm_cdf(d1)

    delta = nd1 - 1 if is_put else nd1
    gamma = pdf_d1 / (S * sigma * sqrt_t)

    theta_base = -(S * pdf_d1 * sigma) / (2 * sqrt_t)
    if is_put:
        theta = (theta_base + r * K * discount * norm_cdf(-d2)) / DAYS_PER_YEAR
        rho = (-K * T * discount * norm_cdf(-d2)) / 100
    else:
        theta = (theta_base - r * K * discount * norm_cdf(d2)) / DAYS_PER_YEAR
        rho = (K * T * discount * norm_cdf(d2)) / 100

    vega = (S * sqrt_t * pdf_d1) / 100

    return Greeks(
        delta=float(delta),
        gamma=float(gamma),
        theta=float(theta),
        vega=float(vega),
        rho=float(rho)
    )


def option_price(S: float, K: float, T: float, r: float, sigma: float, is_put: bool) -> float:
    result = black_scholes(S, K, T, r, sigma)
    return result.put_price if is_put else result.call_price


def implied_volatility(market_price: float, S: float, K: float, T: float, r: float,
                       is_put: bool, max_iterations: int = 100,
                       tolerance: float = 1e-6) -> float:
    """
    Newton-Raphson inversion of the pricing model.

    Seeded with Brenner & Subrahmanyam (1988) and clamped to [MIN_IV, MAX_IV]
    on every step. Returns the best clamped estimate; never raises.
    """
    if T <= 0 or S <= 0:
        return MIN_IV

    sigma = np.sqrt(2 * np.pi / T) * (market_price / S)
    sigma = float(min(MAX_IV, max(MIN_IV, sigma)))

    for _ in range(max_iterations):
        price = option_price(S, K, T, r, sigma, is_put)
        # Greeks report vega per 1% vol
        vega = calculate_greeks(S, K, T, r, sigma, is_put).vega * 100

        if abs(vega) < 1e-10:
            break

        diff = price - market_price
        if abs(diff) < tolerance:
            break

        sigma = sigma - diff / vega
        sigma = float(min(MAX_IV, max(MIN_IV, sigma)))

    return sigma
