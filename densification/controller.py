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

import logging
import math
from dataclasses import dataclass

import torch

from densification.mutator import concat_points, prune_points
from utils.errors import EmptyPointSetError
from utils.general_utils import assert_finite, quaternion_rotation

logger = logging.getLogger(__name__)

SPLIT_SCALE_DIVISOR = 1.6
# Opacity reset target stays inside (0, 1) so its logit is finite
OPACITY_RESET_MIN = 0.01
OPACITY_RESET_MAX = 0.99


@dataclass
class RefineReport:
    iteration: int
    num_before: int
    num_pruned: int
    num_cloned: int
    num_split: int
    opacity_reset: bool
    num_after: int


class DensityController:
    """
    Periodic prune / clone / split decisions over the point set.

    One call to ``refine`` is one refinement cycle: the gradient statistics
    are consumed, the point set is restructured, the statistics are reset to
    the new point count and the optimizer is rebuilt.
    """

    def __init__(self, opt):
        if opt.refine_every <= 0:
            raise ValueError(f"refine_every must be positive, got {opt.refine_every}")
        if opt.reset_alpha_every <= 0:
            raise ValueError(f"reset_alpha_every must be positive, got {opt.reset_alpha_every}")
        self.warmup_steps = opt.warmup_steps
        self.refine_every = opt.refine_every
        self.reset_alpha_every = opt.reset_alpha_every
        self.cull_alpha_thresh = opt.cull_alpha_thresh
        self.cull_scale_thresh = opt.cull_scale_thresh
        self.cull_screen_size = opt.cull_screen_size
        self.densify_grad_thresh = opt.densify_grad_thresh
        self.densify_size_thresh = opt.densify_size_thresh
        self.min_densify_count = max(opt.min_densify_count, 1)

    def should_refine(self, iteration):
        return iteration > self.warmup_steps and iteration % self.refine_every == 0

    def should_reset_opacity(self, iteration):
        return iteration % (self.refine_every * self.reset_alpha_every) == 0

    def opacity_reset_value(self):
        return min(max(2.0 * self.cull_alpha_thresh, OPACITY_RESET_MIN), OPACITY_RESET_MAX)

    def prune_mask(self, gaussians, stats, img_size=None):
        alpha_mask = (gaussians.get_opacity < self.cull_alpha_thresh).squeeze(-1)
        scale_mask = torch.max(gaussians.get_scaling, dim=1).values > self.cull_scale_thresh
        delete_mask = torch.logical_or(alpha_mask, scale_mask)
        if self.cull_screen_size > 0 and img_size is not None:
            screen_mask = stats.max_radii2D.to(delete_mask.device) > self.cull_screen_size * max(img_size)
            delete_mask = torch.logical_or(delete_mask, screen_mask)
        return delete_mask

    def densify_and_clone(self, gaussians, stats, selected_pts_mask):
        count = int(selected_pts_mask.sum().item())
        if count < self.min_densify_count:
            return 0
        logger.info("Cloning %d gaussians", count)
        new_rows = {name: tensor.detach()[selected_pts_mask] for name, tensor in gaussians.get_points().items()}
        concat_points(gaussians, new_rows)
        stats.pad(count)
        return count

    def densify_and_split(self, gaussians, stats, selected_pts_mask):
        count = int(selected_pts_mask.sum().item())
        if count < self.min_densify_count:
            return 0
        logger.info("Splitting %d gaussians", count)
        points = {name: tensor.detach() for name, tensor in gaussians.get_points().items()}
        n = points["xyz"].shape[0]
        # The mask may predate a clone append
        if selected_pts_mask.shape[0] < n:
            padding = torch.zeros((n - selected_pts_mask.shape[0],), dtype=torch.bool, device=selected_pts_mask.device)
            selected_pts_mask = torch.cat((selected_pts_mask, padding))

        centers = points["xyz"][selected_pts_mask]
        stds = gaussians.get_scaling.detach()[selected_pts_mask]
        samples = torch.randn_like(centers) * stds
        offsets = quaternion_rotation(points["rotation"][selected_pts_mask], samples)

        new_rows = {name: tensor[selected_pts_mask].repeat_interleave(2, dim=0) for name, tensor in points.items()}
        new_rows["xyz"] = torch.stack((centers + offsets, centers - offsets), dim=1).reshape(-1, 3)
        new_rows["scaling"] = new_rows["scaling"] - math.log(SPLIT_SCALE_DIVISOR)

        # Children go in before the parents leave so the set is never empty
        concat_points(gaussians, new_rows)
        stats.pad(2 * count)
        prune_points(gaussians, stats, selected_pts_mask)
        return count

    def refine(self, gaussians, stats, optimizer, iteration, img_size=None):
        """
        Run one refinement cycle.

        Args:
            gaussians: GaussianModel to restructure in place
            stats: GradientStats aligned with ``gaussians``
            optimizer: MultiGroupOptimizer, rebuilt at the end
            iteration: Current training iteration
            img_size: (width, height) of the last rendered images, for the
                screen-space prune
        """
        num_before = gaussians.num_points

        delete_mask = self.prune_mask(gaussians, stats, img_size)
        num_delete = int(delete_mask.sum().item())
        if num_delete == num_before:
            raise EmptyPointSetError(
                f"Refinement at iteration {iteration} would prune all {num_before} points; "
                f"check cull_alpha_thresh={self.cull_alpha_thresh} and cull_scale_thresh={self.cull_scale_thresh}")
        num_pruned = prune_points(gaussians, stats, delete_mask)
        if num_pruned:
            logger.info("Pruned %d gaussians", num_pruned)

        grads = stats.average_grad().to(gaussians.device)
        max_scale = torch.max(gaussians.get_scaling, dim=1).values.detach()
        high_grad = grads >= self.densify_grad_thresh
        clone_mask = torch.logical_and(high_grad, max_scale < self.densify_size_thresh)
        split_mask = torch.logical_and(high_grad, max_scale >= self.densify_size_thresh)

        num_cloned = self.densify_and_clone(gaussians, stats, clone_mask)
        num_split = self.densify_and_split(gaussians, stats, split_mask)

        opacity_reset = self.should_reset_opacity(iteration)
        if opacity_reset:
            gaussians.reset_opacity(self.opacity_reset_value())

        for name, tensor in gaussians.get_points().items():
            assert_finite(name, tensor.detach())

        stats.reset(gaussians.num_points)
        optimizer.reset()

        return RefineReport(
            iteration=iteration,
            num_before=num_before,
            num_pruned=num_pruned,
            num_cloned=num_cloned,
            num_split=num_split,
            opacity_reset=opacity_reset,
            num_after=gaussians.num_points,
        )
