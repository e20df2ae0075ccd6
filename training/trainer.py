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
from dataclasses import dataclass, field
from typing import Dict, List, Optional

import torch

from densification.controller import DensityController, RefineReport
from densification.stats import GradientStats
from gaussian_renderer import RenderAux, render
from training.optimizer import MultiGroupOptimizer
from utils.errors import MissingGradientError
from utils.general_utils import assert_finite
from utils.image_utils import psnr
from utils.loss_utils import PIXEL_LOSSES, reconstruction_loss

logger = logging.getLogger(__name__)


@dataclass
class TrainStepStats:
    iteration: int
    loss: float
    psnr: float
    lrs: Dict[str, float]
    num_points: int
    pred_images: torch.Tensor
    auxes: List[RenderAux] = field(default_factory=list)
    refine: Optional[RefineReport] = None


class SplatTrainer:
    """
    Runs training iterations over a GaussianModel.

    Owns the point set, the optimizer and the gradient statistics. None of
    them is touched by anything else between steps.
    """

    def __init__(self, gaussians, opt, pipe, background=None):
        if not 0.0 <= opt.ssim_weight <= 1.0:
            raise ValueError(f"ssim_weight must be in [0, 1], got {opt.ssim_weight}")
        if opt.pixel_loss not in PIXEL_LOSSES:
            raise ValueError(f"Unknown pixel_loss: {opt.pixel_loss}. Expected one of {PIXEL_LOSSES}")

        self.gaussians = gaussians
        self.opt = opt
        self.pipe = pipe
        self.device = gaussians.device
        if background is None:
            background = torch.zeros(3)
        self.background = torch.as_tensor(background, dtype=torch.float32, device=self.device)

        self.controller = DensityController(opt)
        self.optimizer = MultiGroupOptimizer(gaussians, opt)
        self.stats = GradientStats(gaussians.num_points, device=self.device)
        self.iteration = 0

    def pick_background(self):
        if self.opt.random_bck_color:
            return torch.rand(3, device=self.device)
        return self.background

    def _maybe_increase_sh_degree(self, iteration):
        every = self.opt.sh_increase_every
        if every > 0 and iteration > 0 and iteration % every == 0:
            self.gaussians.oneupSHdegree()

    def _check_gradients(self, viewspace_point_tensors):
        for name, param in self.gaussians.get_points().items():
            if param.grad is None:
                raise MissingGradientError(f"No gradient for '{name}' after backward")
            assert_finite(f"{name} gradient", param.grad)
        for i, viewspace_points in enumerate(viewspace_point_tensors):
            if viewspace_points.grad is None:
                raise MissingGradientError(f"No screen-space gradient for render {i} of the batch; no visible points")
            assert_finite("screen-space gradient", viewspace_points.grad)

    def step(self, batch):
        """
        One training iteration on ``batch`` (a SceneBatch).

        Renders every camera, backpropagates the photometric loss, updates
        the point set, records screen-space gradients after warmup and
        refines the point set when scheduled.
        """
        iteration = self.iteration
        self._maybe_increase_sh_degree(iteration)

        bg = self.pick_background()

        images = []
        viewspace_point_tensors = []
        auxes = []
        for viewpoint_cam in batch.cameras:
            render_pkg = render(viewpoint_cam, self.gaussians, self.pipe, bg)
            images.append(render_pkg["render"])
            viewspace_point_tensors.append(render_pkg["viewspace_points"])
            auxes.append(render_pkg["aux"])

        image = torch.stack(images, dim=0)
        gt_image = batch.gt_images.to(image.device)

        loss = reconstruction_loss(image, gt_image, ssim_weight=self.opt.ssim_weight,
                                   pixel_loss=self.opt.pixel_loss, huber_delta=self.opt.huber_delta)
        if not loss.requires_grad:
            raise MissingGradientError(f"Loss at iteration {iteration} does not depend on any point; no visible points")
        assert_finite("loss", loss.detach())

        loss.backward()
        self._check_gradients(viewspace_point_tensors)

        with torch.no_grad():
            psnr_value = psnr(image, gt_image).mean().item()

        lrs = self.optimizer.step(iteration)
        self.gaussians.normalize_rotations()

        width, height = batch.img_size
        if iteration > self.opt.warmup_steps:
            with torch.no_grad():
                grad = torch.stack([v.grad for v in viewspace_point_tensors], dim=0).sum(dim=0)
                half = torch.tensor([width * 0.5, height * 0.5], dtype=grad.dtype, device=grad.device)
                self.stats.update(auxes, grad * half)

        refine_report = None
        if self.controller.should_refine(iteration):
            refine_report = self.controller.refine(self.gaussians, self.stats, self.optimizer, iteration,
                                                   img_size=(width, height))
            logger.info("Refine at iteration %d: %d -> %d points", iteration,
                        refine_report.num_before, refine_report.num_after)

        self.iteration += 1

        return TrainStepStats(
            iteration=iteration,
            loss=loss.item(),
            psnr=psnr_value,
            lrs=lrs,
            num_points=self.gaussians.num_points,
            pred_images=image.detach(),
            auxes=auxes,
            refine=refine_report,
        )

    def capture(self):
        return (self.gaussians.capture(), self.optimizer.state_dict(), self.iteration)

    def restore(self, checkpoint):
        """Load a ``capture()`` tuple. Gradient statistics restart from zero."""
        model_params, optimizer_state, iteration = checkpoint
        self.gaussians.restore(model_params)
        self.optimizer.reset()
        self.optimizer.load_state_dict(optimizer_state)
        self.stats.reset(self.gaussians.num_points)
        self.iteration = iteration
