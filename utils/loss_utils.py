#
# Copyright (C) 2023, Inria
# GRAPHDECO research group, https://team.inria.fr/graphdeco
# All rights reserved.
#
# This software is free for non-commercial, research and evaluation use
# under the terms of the LICENSE.md file.
#
# For inquiries contact  george.drettakis@inria.fr
#

import torch
import torch.nn.functional as F
from math import exp

PIXEL_LOSSES = ("l1", "huber")


def l1_loss(network_output, gt):
    return torch.abs((network_output - gt)).mean()

def huber_loss(network_output, gt, delta=0.05):
    return F.huber_loss(network_output, gt, reduction="mean", delta=delta)

def gaussian(window_size, sigma):
    gauss = torch.Tensor([exp(-(x - window_size // 2) ** 2 / float(2 * sigma ** 2)) for x in range(window_size)])
    return gauss / gauss.sum()

def create_window(window_size, channel):
    _1D_window = gaussian(window_size, 1.5).unsqueeze(1)
    _2D_window = _1D_window.mm(_1D_window.t()).float().unsqueeze(0).unsqueeze(0)
    window = _2D_window.expand(channel, 1, window_size, window_size).contiguous()
    return window

def ssim(img1, img2, window_size=11, size_average=True):
    channel = img1.size(-3)
    window = create_window(window_size, channel)
    window = window.to(device=img1.device, dtype=img1.dtype)

    return _ssim(img1, img2, window, window_size, channel, size_average)

def _ssim(img1, img2, window, window_size, channel, size_average=True):
    mu1 = F.conv2d(img1, window, padding=window_size // 2, groups=channel)
    mu2 = F.conv2d(img2, window, padding=window_size // 2, groups=channel)

    mu1_sq = mu1.pow(2)
    mu2_sq = mu2.pow(2)
    mu1_mu2 = mu1 * mu2

    sigma1_sq = F.conv2d(img1 * img1, window, padding=window_size // 2, groups=channel) - mu1_sq
    sigma2_sq = F.conv2d(img2 * img2, window, padding=window_size // 2, groups=channel) - mu2_sq
    sigma12 = F.conv2d(img1 * img2, window, padding=window_size // 2, groups=channel) - mu1_mu2

    C1 = 0.01 ** 2
    C2 = 0.03 ** 2

    ssim_map = ((2 * mu1_mu2 + C1) * (2 * sigma12 + C2)) / ((mu1_sq + mu2_sq + C1) * (sigma1_sq + sigma2_sq + C2))

    if size_average:
        return ssim_map.mean()
    else:
        return ssim_map.mean(1).mean(1).mean(1)


def reconstruction_loss(pred, gt, ssim_weight=0.0, pixel_loss="l1", huber_delta=0.05):
    """
    Photometric training loss for a batch of renders.

    loss = (1 - w) * pixel_loss + w * (1 - ssim)   when w > 0
    loss = pixel_loss                              otherwise

    Args:
        pred: Rendered images [B, 3, H, W]
        gt: Ground truth images [B, 3, H, W]
        ssim_weight: Blend weight w of the structural term, in [0, 1]
        pixel_loss: "l1" (absolute difference) or "huber"
        huber_delta: Transition point of the Huber loss
    """
    if pixel_loss == "l1":
        loss = l1_loss(pred, gt)
    elif pixel_loss == "huber":
        loss = huber_loss(pred, gt, delta=huber_delta)
    else:
        raise ValueError(f"Unknown pixel_loss: {pixel_loss}. Expected one of {PIXEL_LOSSES}")

    if ssim_weight > 0.0:
        loss = loss * (1.0 - ssim_weight) + (1.0 - ssim(pred[:, :3], gt[:, :3])) * ssim_weight
    return loss
