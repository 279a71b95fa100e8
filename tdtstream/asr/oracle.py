# coding=utf-8
from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Protocol, Union, runtime_checkable

import numpy as np

from ..errors import ProcessingFailedError, UnsupportedPlatformError
from .constants import ENCODER_HIDDEN_SIZE

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EncoderOutput:
    frames: np.ndarray
    valid_length: int


@dataclass(frozen=True)
class DecoderStepOutput:
    projection: np.ndarray
    hidden: np.ndarray
    cell: np.ndarray


@dataclass(frozen=True)
class JointDecision:
    token: int
    probability: float
    duration_bin: int


@runtime_checkable
class AcousticModelOracle(Protocol):
    """
    Black-box encoder / prediction network / joint network.

    Implementations may block; the decode loop calls them strictly in order.
    """

    def encode(self, samples: np.ndarray, valid_length: int) -> EncoderOutput:
        ...

    def decoder_step(self, token: int, hidden: np.ndarray, cell: np.ndarray) -> DecoderStepOutput:
        ...

    def joint_step(self, encoder_frame: np.ndarray, decoder_projection: np.ndarray) -> JointDecision:
        ...


def _as_float32(value: Any) -> np.ndarray:
    if hasattr(value, "detach"):
        value = value.detach().cpu().numpy()
    return np.ascontiguousarray(np.asarray(value, dtype=np.float32))


def _scalar(value: Any) -> float:
    if hasattr(value, "detach"):
        value = value.detach().cpu().numpy()
    arr = np.asarray(value).reshape(-1)
    if arr.size != 1:
        raise ProcessingFailedError(f"joint decision returned unexpected tensor shape: {tuple(np.shape(value))}")
    return float(arr[0])


def resolve_device(device: str) -> Any:
    import torch

    dev = torch.device(device)
    if dev.type == "cuda":
        index = 0 if dev.index is None else int(dev.index)
        if not torch.cuda.is_available() or index >= torch.cuda.device_count():
            raise UnsupportedPlatformError(f"CUDA device not available: {device}")
    elif dev.type == "mps":
        mps = getattr(torch.backends, "mps", None)
        if mps is None or not mps.is_available():
            raise UnsupportedPlatformError(f"MPS device not available: {device}")
    return dev


class TorchAcousticModel:
    """
    Adapts three torch callables (eager modules or TorchScript) to the oracle contract.

    encoder(audio_signal[1, N], audio_length[1]) -> (encoder[1, T, H] | [1, H, T], encoder_length[1])
    decoder(targets[1, 1], target_length[1], h_in[L, 1, H], c_in[L, 1, H]) -> (decoder, h_out, c_out)
    joint(encoder_step[1, H, 1], decoder_step[1, H, 1]) -> (token_id, token_prob, duration)
    """

    def __init__(
        self,
        encoder: Callable[..., Any],
        decoder: Callable[..., Any],
        joint: Callable[..., Any],
        *,
        encoder_hidden_size: int = ENCODER_HIDDEN_SIZE,
        device: str = "cpu",
    ) -> None:
        import torch

        self._torch = torch
        self._encoder = encoder
        self._decoder = decoder
        self._joint = joint
        self.encoder_hidden_size = int(encoder_hidden_size)
        self.device = resolve_device(device)

    @classmethod
    def from_directory(cls, model_dir: Union[str, Path], device: str = "cpu", **kwargs) -> "TorchAcousticModel":
        import torch

        resolve_device(device)
        root = Path(model_dir).expanduser()
        modules: Dict[str, Any] = {}
        for name in ("encoder", "decoder", "joint"):
            path = root / f"{name}.pt"
            if not path.is_file():
                raise FileNotFoundError(f"missing TorchScript module: {path}")
            module = torch.jit.load(str(path), map_location=device)
            module.eval()
            modules[name] = module
        logger.info("loaded acoustic model modules from %s", root)
        return cls(modules["encoder"], modules["decoder"], modules["joint"], device=device, **kwargs)

    def encode(self, samples: np.ndarray, valid_length: int) -> EncoderOutput:
        torch = self._torch
        with torch.inference_mode():
            audio = torch.from_numpy(np.ascontiguousarray(samples, dtype=np.float32)).to(self.device).unsqueeze(0)
            length = torch.tensor([int(valid_length)], dtype=torch.long, device=self.device)
            encoded, encoded_len = self._encoder(audio, length)
        return EncoderOutput(frames=_as_float32(encoded), valid_length=int(_scalar(encoded_len)))

    def decoder_step(self, token: int, hidden: np.ndarray, cell: np.ndarray) -> DecoderStepOutput:
        torch = self._torch
        with torch.inference_mode():
            targets = torch.tensor([[int(token)]], dtype=torch.long, device=self.device)
            target_length = torch.tensor([1], dtype=torch.long, device=self.device)
            h_in = torch.from_numpy(np.ascontiguousarray(hidden, dtype=np.float32)).to(self.device).unsqueeze(1)
            c_in = torch.from_numpy(np.ascontiguousarray(cell, dtype=np.float32)).to(self.device).unsqueeze(1)
            projection, h_out, c_out = self._decoder(targets, target_length, h_in, c_in)
        return DecoderStepOutput(
            projection=_as_float32(projection).reshape(-1),
            hidden=_as_float32(h_out).reshape(np.shape(hidden)),
            cell=_as_float32(c_out).reshape(np.shape(cell)),
        )

    def joint_step(self, encoder_frame: np.ndarray, decoder_projection: np.ndarray) -> JointDecision:
        torch = self._torch
        with torch.inference_mode():
            enc = torch.from_numpy(np.ascontiguousarray(encoder_frame, dtype=np.float32)).to(self.device)
            dec = torch.from_numpy(np.ascontiguousarray(decoder_projection, dtype=np.float32)).to(self.device)
            token, prob, duration = self._joint(enc.view(1, -1, 1), dec.view(1, -1, 1))
        return JointDecision(token=int(_scalar(token)), probability=_scalar(prob), duration_bin=int(_scalar(duration)))


def load_acoustic_model(model_dir: Optional[Union[str, Path]], device: str = "cpu") -> Optional[TorchAcousticModel]:
    if not model_dir:
        return None
    return TorchAcousticModel.from_directory(model_dir, device=device)
