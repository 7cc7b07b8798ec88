"""Super-resolution inference engine and the RRDBNet architecture it loads."""

import logging
from pathlib import Path

import numpy as np
import torch
import torch.nn as nn
import torch.nn.functional as F

from upscaler.core.backend import shared_session_cache
from upscaler.core.tensor import Tile

logger = logging.getLogger(__name__)


class ResidualDenseBlock(nn.Module):
    """Residual Dense Block from ESRGAN."""
    def __init__(self, nf=64, gc=32):
        super().__init__()
        self.conv1 = nn.Conv2d(nf, gc, 3, 1, 1, bias=True)
        self.conv2 = nn.Conv2d(nf + gc, gc, 3, 1, 1, bias=True)
        self.conv3 = nn.Conv2d(nf + 2 * gc, gc, 3, 1, 1, bias=True)
        self.conv4 = nn.Conv2d(nf + 3 * gc, gc, 3, 1, 1, bias=True)
        self.conv5 = nn.Conv2d(nf + 4 * gc, nf, 3, 1, 1, bias=True)
        self.lrelu = nn.LeakyReLU(negative_slope=0.2, inplace=True)

    def forward(self, x):
        x1 = self.lrelu(self.conv1(x))
        x2 = self.lrelu(self.conv2(torch.cat((x, x1), 1)))
        x3 = self.lrelu(self.conv3(torch.cat((x, x1, x2), 1)))
        x4 = self.lrelu(self.conv4(torch.cat((x, x1, x2, x3), 1)))
        x5 = self.conv5(torch.cat((x, x1, x2, x3, x4), 1))
        return x5 * 0.2 + x

class RRDB(nn.Module):
    """Residual in Residual Dense Block."""
    def __init__(self, nf=64, gc=32):
        super().__init__()
        self.rdb1 = ResidualDenseBlock(nf, gc)
        self.rdb2 = ResidualDenseBlock(nf, gc)
        self.rdb3 = ResidualDenseBlock(nf, gc)

    def forward(self, x):
        out = self.rdb1(x)
        out = self.rdb2(out)
        out = self.rdb3(out)
        return out * 0.2 + x

class RRDBNet(nn.Module):
    """ESRGAN generator; x2 and x1 variants fold the input with pixel_unshuffle."""

    def __init__(self, num_in_ch=3, num_out_ch=3, scale=4, num_feat=64, num_block=23, num_grow_ch=32):
        super().__init__()
        self.scale = scale
        if scale == 2:
            num_in_ch = num_in_ch * 4
        elif scale == 1:
            num_in_ch = num_in_ch * 16

        self.conv_first = nn.Conv2d(num_in_ch, num_feat, 3, 1, 1, bias=True)
        self.body = nn.ModuleList()
        for _ in range(num_block):
            self.body.append(RRDB(num_feat, num_grow_ch))
        self.conv_body = nn.Conv2d(num_feat, num_feat, 3, 1, 1, bias=True)

        self.conv_up1 = nn.Conv2d(num_feat, num_feat, 3, 1, 1, bias=True)
        self.conv_up2 = nn.Conv2d(num_feat, num_feat, 3, 1, 1, bias=True)
        self.conv_hr = nn.Conv2d(num_feat, num_feat, 3, 1, 1, bias=True)
        self.conv_last = nn.Conv2d(num_feat, num_out_ch, 3, 1, 1, bias=True)

        self.lrelu = nn.LeakyReLU(negative_slope=0.2, inplace=True)

    def forward(self, x):
        if self.scale == 2:
            feat = pixel_unshuffle(x, scale=2)
        elif self.scale == 1:
            feat = pixel_unshuffle(x, scale=4)
        else:
            feat = x

        feat = self.conv_first(feat)
        body_feat = feat.clone()
        for block in self.body:
            body_feat = block(body_feat)
        body_feat = self.conv_body(body_feat)
        feat = feat + body_feat

        feat = self.lrelu(self.conv_up1(F.interpolate(feat, scale_factor=2, mode='nearest')))
        feat = self.lrelu(self.conv_up2(F.interpolate(feat, scale_factor=2, mode='nearest')))
        out = self.conv_last(self.lrelu(self.conv_hr(feat)))
        return out

def pixel_unshuffle(x, scale):
    b, c, h, w = x.size()
    h //= scale
    w //= scale
    out_channel = c * (scale ** 2)
    out = x.view(b, c, h, scale, w, scale)
    out = out.permute(0, 1, 3, 5, 2, 4).contiguous()
    out = out.view(b, out_channel, h, w)
    return out


def rrdbnet_from_state_dict(state_dict, default_scale=4):
    """Build an RRDBNet whose shape matches a checkpoint and load it.

    Block count and channel widths are read from the weights; the scale comes
    from the folded input channels (3 -> x4, 12 -> x2, 48 -> x1).
    """
    if "params_ema" in state_dict:
        state_dict = state_dict["params_ema"]
    elif "params" in state_dict:
        state_dict = state_dict["params"]

    conv_first = state_dict["conv_first.weight"]
    num_feat, in_channels = conv_first.shape[0], conv_first.shape[1]
    scale = {3: 4, 12: 2, 48: 1}.get(in_channels, default_scale)
    num_block = len({key.split(".")[1] for key in state_dict if key.startswith("body.")})
    num_grow_ch = state_dict["body.0.rdb1.conv1.weight"].shape[0]

    model = RRDBNet(
        num_in_ch=3,
        num_out_ch=state_dict["conv_last.weight"].shape[0],
        scale=scale,
        num_feat=num_feat,
        num_block=num_block,
        num_grow_ch=num_grow_ch,
    )
    model.load_state_dict(state_dict)
    return model


def ensure_nchw(output):
    """Accept NCHW (1,3,H,W) or NHWC (1,H,W,3) model output."""
    if output.ndim != 4:
        raise ValueError(f"Unexpected model output rank: {output.shape}")
    if output.shape[1] == 3:
        return output
    if output.shape[-1] == 3:
        return output.transpose(0, 3, 1, 2)
    raise ValueError(f"Unexpected model output shape (expected 3 channels): {output.shape}")


class InferenceEngine:
    """Runs tiles through a super-resolution model one at a time.

    The loaded model is shared through a SessionCache keyed by file path;
    ``dispose`` releases this engine's entry.
    """

    def __init__(self, model_path, device="auto", cache=None):
        self.model_path = Path(model_path)
        self.device = device
        self.cache = cache if cache is not None else shared_session_cache()
        self._model = None
        self._preferred_tile_size = None

    def _ensure_model(self):
        if self._model is None:
            self._model = self.cache.acquire(self.model_path, device=self.device)
            shape = self._model.input_shape
            if len(shape) >= 4:
                height, width = shape[-2], shape[-1]
                if height and width and height == width:
                    self._preferred_tile_size = height
            if self._model.using_cpu_fallback:
                logger.warning("Inference is running on CPU (GPU unavailable)")
        return self._model

    @property
    def preferred_tile_size(self):
        """Square input size the model declares, or None if it accepts any size."""
        self._ensure_model()
        return self._preferred_tile_size

    @property
    def using_cpu_fallback(self):
        return self._ensure_model().using_cpu_fallback

    def infer(self, tiles, on_tile=None, cancel=None):
        """Upscale each tile in order.

        Args:
            tiles: Input tiles
            on_tile: Optional callback(completed, total) after each tile
            cancel: Optional CancellationToken checked before each tile

        Returns:
            list of output tiles with positions and sizes in output pixels
        """
        if not tiles:
            return []

        model = self._ensure_model()
        outputs = []
        for index, tile in enumerate(tiles, start=1):
            if cancel is not None:
                cancel.raise_if_cancelled()

            result = ensure_nchw(model.run(tile.data[np.newaxis]))
            out_height, out_width = result.shape[2], result.shape[3]
            scale_x = max(1, out_width // max(1, tile.width))
            scale_y = max(1, out_height // max(1, tile.height))
            outputs.append(Tile(
                x=tile.x * scale_x,
                y=tile.y * scale_y,
                width=out_width,
                height=out_height,
                data=np.clip(result[0], 0.0, 1.0).astype(np.float32),
            ))

            if on_tile is not None:
                on_tile(index, len(tiles))

        return outputs

    def dispose(self):
        self.cache.release(self.model_path)
        self._model = None


def clear_all_sessions(cache=None):
    """Release every cached model (application shutdown)."""
    (cache if cache is not None else shared_session_cache()).clear()
