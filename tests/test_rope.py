"""
Unit tests specifically for Rotary Positional Embeddings (RoPE).

These tests verify the mathematical properties that make RoPE work:
  1. Rotation preserves vector magnitude (isometry)
  2. Relative position encoding: dot products depend on distance
  3. Tables computed at an offset match the same rows of a full table
  4. Linear scaling divides positions by the factor
  5. The traditional and rotate-half layouts are the same rotation
"""

import sys
import os

import torch
import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from llama3_chat.model import rope_frequencies, apply_rotary_embeddings


class TestRoPEFrequencies:
    """Tests for frequency computation."""

    def test_shape(self):
        cos, sin = rope_frequencies(64, 0, 512)
        assert cos.shape == (512, 32)
        assert sin.shape == (512, 32)

    def test_position_zero(self):
        """At position 0, all angles are 0, so cos=1, sin=0."""
        cos, sin = rope_frequencies(64, 0, 4)
        assert torch.allclose(cos[0], torch.ones(32), atol=1e-6)
        assert torch.allclose(sin[0], torch.zeros(32), atol=1e-6)

    def test_offset_matches_full_table(self):
        """Rows for [10, 15) equal rows 10..14 of a table starting at 0."""
        cos_full, sin_full = rope_frequencies(64, 0, 15)
        cos_off, sin_off = rope_frequencies(64, 10, 5)
        assert torch.allclose(cos_off, cos_full[10:15], atol=1e-6)
        assert torch.allclose(sin_off, sin_full[10:15], atol=1e-6)

    def test_linear_scale(self):
        """scale=0.5 puts position 2 at the angle of unscaled position 1."""
        cos_scaled, sin_scaled = rope_frequencies(64, 0, 4, scale=0.5)
        cos, sin = rope_frequencies(64, 0, 4)
        assert torch.allclose(cos_scaled[2], cos[1], atol=1e-6)
        assert torch.allclose(sin_scaled[2], sin[1], atol=1e-6)

    def test_frequencies_decrease(self):
        """Higher dimension indices should have lower frequencies."""
        cos, sin = rope_frequencies(64, 0, 2, theta=10000.0)
        angles_at_pos1 = torch.atan2(sin[1], cos[1])
        for i in range(len(angles_at_pos1) - 1):
            assert angles_at_pos1[i] >= angles_at_pos1[i + 1] - 1e-6

    def test_different_theta(self):
        """LLaMA 3's theta=500000 rotates slower than the classic 10000."""
        cos1, _ = rope_frequencies(64, 0, 64, theta=10000.0)
        cos2, _ = rope_frequencies(64, 0, 64, theta=500000.0)
        assert not torch.allclose(cos1, cos2)

    def test_even_dim_required(self):
        """head_dim must be even for RoPE."""
        with pytest.raises(AssertionError):
            rope_frequencies(63, 0, 8)


class TestRoPEApplication:
    """Tests for applying RoPE to (batch, heads, seq, head_dim) tensors."""

    @pytest.mark.parametrize("traditional", [False, True])
    def test_output_shape(self, traditional):
        cos, sin = rope_frequencies(64, 0, 32)
        x = torch.randn(2, 4, 32, 64)
        out = apply_rotary_embeddings(x, cos, sin, traditional)
        assert out.shape == x.shape

    @pytest.mark.parametrize("traditional", [False, True])
    def test_magnitude_preservation(self, traditional):
        """Rotation preserves L2 norm (isometry property)."""
        cos, sin = rope_frequencies(64, 0, 32)
        x = torch.randn(4, 8, 32, 64)

        x_rot = apply_rotary_embeddings(x, cos, sin, traditional)

        assert torch.allclose(x.norm(dim=-1), x_rot.norm(dim=-1), atol=1e-4)

    def test_identity_at_position_zero(self):
        cos, sin = rope_frequencies(64, 0, 1)
        x = torch.randn(1, 2, 1, 64)
        assert torch.allclose(apply_rotary_embeddings(x, cos, sin), x, atol=1e-6)

    def test_relative_distance_invariance(self):
        """
        Core RoPE property: dot(R(q,m), R(k,n)) depends only on (m-n).

        Positions come from rope_frequencies offsets, the same way the
        attention layer asks for them during cached decoding.
        """
        q = torch.randn(1, 1, 1, 64)
        k = torch.randn(1, 1, 1, 64)
        relative_distance = 5

        dots = []
        for base_pos in [0, 10, 20, 50, 80]:
            cos_m, sin_m = rope_frequencies(64, base_pos + relative_distance, 1)
            cos_n, sin_n = rope_frequencies(64, base_pos, 1)
            q_rot = apply_rotary_embeddings(q, cos_m, sin_m)
            k_rot = apply_rotary_embeddings(k, cos_n, sin_n)
            dots.append((q_rot * k_rot).sum().item())

        for d in dots:
            assert abs(d - dots[0]) < 1e-3, (
                f"Relative position property violated: dots = {dots}"
            )

    def test_traditional_is_permuted_rotate_half(self):
        """
        Interleaved pairs (d0,d1),(d2,d3)... become (d_i, d_i+half) after
        moving even dims to the front and odd dims to the back.
        """
        cos, sin = rope_frequencies(8, 3, 4)
        x = torch.randn(1, 2, 4, 8)
        perm = torch.cat([torch.arange(0, 8, 2), torch.arange(1, 8, 2)])

        traditional = apply_rotary_embeddings(x, cos, sin, traditional=True)
        rotate_half = apply_rotary_embeddings(x[..., perm], cos, sin, traditional=False)

        assert torch.allclose(traditional[..., perm], rotate_half, atol=1e-6)

    def test_different_heads_independent(self):
        cos, sin = rope_frequencies(64, 0, 8)
        x = torch.zeros(1, 4, 8, 64)
        x[:, 0] = 1.0
        x[:, 2] = 2.0

        out = apply_rotary_embeddings(x, cos, sin)

        assert torch.allclose(out[:, 2], 2 * out[:, 0], atol=1e-5)
        assert torch.count_nonzero(out[:, 1]) == 0

    def test_dtype_preservation(self):
        cos, sin = rope_frequencies(64, 0, 8)

        x_f32 = torch.randn(1, 2, 8, 64, dtype=torch.float32)
        assert apply_rotary_embeddings(x_f32, cos, sin).dtype == torch.float32

        x_f16 = x_f32.half()
        assert apply_rotary_embeddings(x_f16, cos, sin).dtype == torch.float16


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
