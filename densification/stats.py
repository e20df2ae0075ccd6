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


class GradientStats:
    """
    Per-point screen-space gradient statistics gathered between refinements.

    grad_accum        running sum of the pixel-space positional gradient norm
    visibility_count  number of updates in which the point had a nonzero gradient
    max_radii2D       largest screen radius (pixels) the point was drawn with
    """

    def __init__(self, num_points, device="cpu"):
        self.device = torch.device(device)
        self.reset(num_points)

    def __len__(self):
        return self.grad_accum.shape[0]

    def reset(self, num_points):
        self.grad_accum = torch.zeros((num_points,), device=self.device)
        self.visibility_count = torch.zeros((num_points,), dtype=torch.int32, device=self.device)
        self.max_radii2D = torch.zeros((num_points,), device=self.device)

    @torch.no_grad()
    def update(self, auxes, pixel_grad):
        """
        Accumulate one iteration.

        ``pixel_grad`` is the (N, 2) screen-space gradient in pixel units for
        every point, summed over the renders of the batch, so it counts once.
        ``auxes`` holds the RenderAux of each render; their compacted radii
        are all merged into ``max_radii2D``.
        """
        self.add_gradient(pixel_grad)
        for aux in auxes:
            self.update_radii(aux)

    @torch.no_grad()
    def add_gradient(self, pixel_grad):
        magnitude = torch.norm(pixel_grad.to(self.device), dim=-1)
        self.grad_accum += magnitude
        self.visibility_count += (magnitude > 0).to(torch.int32)

    @torch.no_grad()
    def update_radii(self, aux):
        radii = torch.zeros_like(self.max_radii2D)
        gid = aux.global_from_compact_gid.to(self.device)
        radii[gid] = aux.radii.to(self.device, self.max_radii2D.dtype)
        self.max_radii2D = torch.max(self.max_radii2D, radii)

    def average_grad(self):
        return self.grad_accum / torch.clamp_min(self.visibility_count, 1).to(self.grad_accum.dtype)

    def select(self, indices):
        indices = indices.to(self.device)
        self.grad_accum = self.grad_accum[indices]
        self.visibility_count = self.visibility_count[indices]
        self.max_radii2D = self.max_radii2D[indices]

    def pad(self, num_new):
        """Append zeroed rows for points that have no history yet."""
        self.grad_accum = torch.cat((self.grad_accum, torch.zeros((num_new,), device=self.device)))
        self.visibility_count = torch.cat(
            (self.visibility_count, torch.zeros((num_new,), dtype=torch.int32, device=self.device)))
        self.max_radii2D = torch.cat((self.max_radii2D, torch.zeros((num_new,), device=self.device)))
