import math
import numbers

import numpy as np


class SamplerError(ValueError):
    pass


class GaussianSampler:
    def __init__(self, rng=None):
        self.rng = rng if rng is not None else np.random.default_rng()

    def _uniform_open(self):
        # Generator.random() is on [0, 1); log(0) is undefined.
        u = self.rng.random()
        while u <= 0.0:
            u = self.rng.random()
        return u

    def normal(self, mean=0.0, std=1.0):
        if not math.isfinite(mean):
            raise SamplerError(f"mean must be finite, got {mean!r}.")
        if not math.isfinite(std) or std < 0:
            raise SamplerError(f"std must be finite and >= 0, got {std!r}.")
        u1 = self._uniform_open()
        u2 = self.rng.random()
        z0 = math.sqrt(-2.0 * math.log(u1)) * math.cos(2.0 * math.pi * u2)
        return z0 * std + mean

    def spawn(self, n):
        if n < 0:
            raise SamplerError(f"spawn count must be >= 0, got {n}.")
        return [GaussianSampler(child) for child in self.rng.spawn(n)]

    def describe(self):
        return {
            "sampler": type(self).__name__,
            "bit_generator": type(self.rng.bit_generator).__name__,
        }


def make_sampler(seed=None):
    if seed is not None and (isinstance(seed, bool) or not isinstance(seed, numbers.Integral) or seed < 0):
        raise SamplerError(f"seed must be a non-negative int or None, got {seed!r}.")
    return GaussianSampler(np.random.default_rng(seed))


def describe_sampler(sampler):
    describe = getattr(sampler, "describe", None)
    if callable(describe):
        return describe()
    return {"sampler": type(sampler).__name__, "bit_generator": None}
