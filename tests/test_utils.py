"""
Unit tests for device selection and the small utilities the scripts use.
"""

import sys
import os

import torch
import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from llama3_chat.config import ModelConfig
from llama3_chat.device import (
    device_info,
    get_device,
    get_dtype,
    get_memory_usage,
    release_memory,
)
from llama3_chat.model import Model
from llama3_chat.quantize import quantize_model
from llama3_chat.utils import (
    GenerationLogger,
    Timer,
    count_parameters,
    model_memory_mb,
    set_seed,
)


@pytest.fixture
def tiny_config():
    return ModelConfig(
        hidden_size=64,
        num_hidden_layers=1,
        intermediate_size=128,
        num_attention_heads=4,
        rms_norm_eps=1e-5,
        vocab_size=128,
    )


class TestDevice:

    def test_explicit_cpu(self):
        assert get_device("cpu") == torch.device("cpu")

    def test_auto_returns_device(self):
        assert isinstance(get_device("auto"), torch.device)

    def test_cpu_auto_dtype_is_float32(self):
        assert get_dtype("auto", torch.device("cpu")) == torch.float32

    def test_named_dtypes(self):
        cpu = torch.device("cpu")
        assert get_dtype("float16", cpu) == torch.float16
        assert get_dtype("bfloat16", cpu) == torch.bfloat16
        assert get_dtype("float32", cpu) == torch.float32

    def test_unknown_dtype(self):
        with pytest.raises(ValueError):
            get_dtype("int8", torch.device("cpu"))

    def test_device_info_cpu(self):
        assert "CPU" in device_info(torch.device("cpu"))

    def test_device_info_reports_dtype(self):
        info = device_info(torch.device("cpu"), torch.bfloat16)
        assert "Dtype: bfloat16" in info

    def test_cpu_memory_usage(self):
        usage = get_memory_usage(torch.device("cpu"))
        assert usage == {"allocated_mb": 0.0, "reserved_mb": 0.0}

    def test_release_memory_cpu(self):
        release_memory(torch.device("cpu"))


class TestDiagnostics:

    def test_count_parameters(self, tiny_config):
        model = Model(tiny_config)
        expected = sum(p.numel() for p in model.parameters())
        assert count_parameters(model) == expected

    def test_count_parameters_quantized_matches_float(self, tiny_config):
        float_count = count_parameters(Model(tiny_config))
        quantized = quantize_model(Model(tiny_config), group_size=64, bits=4)
        assert count_parameters(quantized) == float_count

    def test_quantized_model_is_smaller(self, tiny_config):
        float_mb = model_memory_mb(Model(tiny_config))
        quantized_mb = model_memory_mb(quantize_model(Model(tiny_config), group_size=64, bits=4))
        assert quantized_mb < float_mb / 2


class TestSeed:

    def test_reproducible_sampling(self):
        probs = torch.ones(50) / 50
        set_seed(7)
        first = torch.multinomial(probs, 10, replacement=True)
        set_seed(7)
        second = torch.multinomial(probs, 10, replacement=True)
        assert torch.equal(first, second)


class TestTimer:

    def test_measures_elapsed(self):
        with Timer("work") as t:
            sum(range(1000))
        assert t.elapsed > 0
        assert str(t).startswith("work: ")


class TestGenerationLogger:

    def test_console_only(self, capsys):
        logger = GenerationLogger()
        logger.log_info("hello")
        logger.close()
        assert "[INFO] hello" in capsys.readouterr().err

    def test_writes_log_file(self, tmp_path):
        logger = GenerationLogger(str(tmp_path), quiet=True)
        logger.log_load("weights/x", "2L 64d 4H/4KV", 1_500_000, 0.5,
                        torch.device("cpu"), torch.float32)
        logger.close()

        logs = list(tmp_path.glob("generate_*.log"))
        assert len(logs) == 1
        content = logs[0].read_text()
        assert "[LOAD] weights/x | 2L 64d 4H/4KV | 1.5M params | cpu float32 | 0.50s" in content

    def test_quiet_suppresses_console(self, capsys):
        logger = GenerationLogger(quiet=True)
        logger.log_info("hidden")
        assert capsys.readouterr().err == ""


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
