"""
Unit tests for the chunked KV cache.

Tests verify:
  1. Capacity is always a whole number of chunks and never shrinks
  2. Decode steps that fit in the current chunk write in place
  3. Reallocations happen once per chunk, not once per token
  4. Stored keys/values survive every growth event unchanged
  5. Shape mismatches are rejected
"""

import sys
import os

import torch
import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from llama3_chat.model import KVCache


N_KV_HEADS = 2
HEAD_DIM = 4


def new_kv(seq_len: int):
    shape = (1, N_KV_HEADS, seq_len, HEAD_DIM)
    return torch.randn(shape), torch.randn(shape)


@pytest.fixture
def cache():
    return KVCache(HEAD_DIM, N_KV_HEADS, step=8)


class TestKVCacheGrowth:
    """Tests for chunked allocation."""

    def test_starts_empty(self, cache):
        assert cache.offset == 0
        assert cache.capacity == 0
        assert cache.keys is None

    def test_first_update_allocates_one_chunk(self, cache):
        k, v = new_kv(3)
        keys, values = cache.update_and_fetch(k, v)
        assert keys.shape == (1, N_KV_HEADS, 3, HEAD_DIM)
        assert values.shape == (1, N_KV_HEADS, 3, HEAD_DIM)
        assert cache.offset == 3
        assert cache.capacity == 8

    def test_prefill_longer_than_step(self, cache):
        """A 20-token prompt needs ceil(20 / 8) = 3 chunks."""
        k, v = new_kv(20)
        cache.update_and_fetch(k, v)
        assert cache.offset == 20
        assert cache.capacity == 24

    def test_exact_fit_does_not_over_allocate(self, cache):
        k, v = new_kv(8)
        cache.update_and_fetch(k, v)
        assert cache.capacity == 8

    def test_decode_within_capacity_writes_in_place(self, cache):
        k, v = new_kv(3)
        cache.update_and_fetch(k, v)
        ptr = cache.keys.data_ptr()

        for _ in range(5):
            k, v = new_kv(1)
            cache.update_and_fetch(k, v)
            assert cache.keys.data_ptr() == ptr
        assert cache.offset == 8
        assert cache.capacity == 8

    def test_capacity_monotonic_and_chunked(self, cache):
        previous = 0
        for i in range(50):
            k, v = new_kv(1)
            cache.update_and_fetch(k, v)
            assert cache.offset == i + 1
            assert cache.offset <= cache.capacity
            assert cache.capacity % cache.step == 0
            assert cache.capacity >= previous
            previous = cache.capacity

    def test_reallocations_once_per_chunk(self, cache):
        reallocations = 0
        ptr = None
        for _ in range(50):
            k, v = new_kv(1)
            cache.update_and_fetch(k, v)
            if cache.keys.data_ptr() != ptr:
                reallocations += 1
                ptr = cache.keys.data_ptr()
        assert reallocations == 7  # ceil(50 / 8)

    def test_growth_after_partial_chunk(self, cache):
        """offset 5 + 6 new tokens = 11 → grows to 16, not 5 + 8 + ..."""
        k, v = new_kv(5)
        cache.update_and_fetch(k, v)
        k, v = new_kv(6)
        cache.update_and_fetch(k, v)
        assert cache.offset == 11
        assert cache.capacity == 16

    def test_returns_only_valid_prefix(self, cache):
        k, v = new_kv(3)
        keys, values = cache.update_and_fetch(k, v)
        assert cache.capacity > 3
        assert keys.shape[2] == 3
        assert values.shape[2] == 3

    def test_reset(self, cache):
        k, v = new_kv(10)
        cache.update_and_fetch(k, v)
        cache.reset()
        assert cache.offset == 0
        assert cache.capacity == 0


class TestKVCacheContents:
    """Tests that growth never corrupts stored positions."""

    def test_contents_preserved_across_growth(self, cache):
        all_keys, all_values = [], []

        k, v = new_kv(5)
        all_keys.append(k)
        all_values.append(v)
        cache.update_and_fetch(k, v)

        for _ in range(30):
            k, v = new_kv(1)
            all_keys.append(k)
            all_values.append(v)
            keys, values = cache.update_and_fetch(k, v)

            assert torch.equal(keys, torch.cat(all_keys, dim=2))
            assert torch.equal(values, torch.cat(all_values, dim=2))

    def test_padding_is_zero(self, cache):
        k, v = new_kv(3)
        cache.update_and_fetch(k, v)
        assert torch.count_nonzero(cache.keys[:, :, 3:, :]) == 0
        assert torch.count_nonzero(cache.values[:, :, 3:, :]) == 0

    def test_keeps_dtype(self):
        cache = KVCache(HEAD_DIM, N_KV_HEADS, step=4)
        k = torch.randn(1, N_KV_HEADS, 2, HEAD_DIM, dtype=torch.float16)
        keys, _ = cache.update_and_fetch(k, k.clone())
        assert keys.dtype == torch.float16


class TestKVCacheValidation:
    """Tests for shape checks."""

    def test_wrong_head_count_raises(self, cache):
        k = torch.randn(1, N_KV_HEADS + 1, 1, HEAD_DIM)
        with pytest.raises(ValueError):
            cache.update_and_fetch(k, k.clone())

    def test_wrong_head_dim_raises(self, cache):
        k = torch.randn(1, N_KV_HEADS, 1, HEAD_DIM * 2)
        with pytest.raises(ValueError):
            cache.update_and_fetch(k, k.clone())

    def test_keys_values_mismatch_raises(self, cache):
        k, _ = new_kv(2)
        _, v = new_kv(3)
        with pytest.raises(ValueError):
            cache.update_and_fetch(k, v)

    def test_rejected_update_leaves_cache_untouched(self, cache):
        k, v = new_kv(3)
        cache.update_and_fetch(k, v)
        bad = torch.randn(1, N_KV_HEADS + 1, 1, HEAD_DIM)
        with pytest.raises(ValueError):
            cache.update_and_fetch(bad, bad.clone())
        assert cache.offset == 3


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
