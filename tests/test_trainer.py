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

import numpy as np
import pytest
import torch

from conftest import IMAGE_SIZE, make_batch, make_camera, make_gaussians
from training import SplatTrainer
from utils.errors import MissingGradientError, NonFiniteError


@pytest.fixture
def small_opt(opt):
    # 16 pixel test images are too small for the default screen-size prune
    opt.cull_screen_size = 0.0
    opt.warmup_steps = 0
    opt.refine_every = 1000
    opt.reset_alpha_every = 1000
    return opt


def test_step_reports_progress(small_opt, pipe, camera):
    gaussians = make_gaussians(n=6)
    trainer = SplatTrainer(gaussians, small_opt, pipe)
    stats = trainer.step(make_batch([camera]))

    assert stats.iteration == 0
    assert trainer.iteration == 1
    assert np.isfinite(stats.loss)
    assert np.isfinite(stats.psnr)
    assert stats.num_points == 6
    assert stats.pred_images.shape == (1, 3, IMAGE_SIZE, IMAGE_SIZE)
    assert set(stats.lrs) == {"xyz", "f_dc", "f_rest", "opacity", "scaling", "rotation"}
    assert len(stats.auxes) == 1
    assert stats.refine is None


def test_step_moves_parameters_and_normalizes_rotations(small_opt, pipe, camera):
    rotation = torch.zeros((4, 4))
    rotation[:, 0] = 3.0
    gaussians = make_gaussians(n=4, rotation=rotation)
    before = gaussians.get_xyz.detach().clone()
    SplatTrainer(gaussians, small_opt, pipe).step(make_batch([camera]))
    assert not torch.equal(gaussians.get_xyz.detach(), before)
    assert torch.allclose(gaussians._rotation.detach().norm(dim=-1), torch.ones(4), atol=1e-5)


def test_statistics_only_after_warmup(small_opt, pipe, camera):
    small_opt.warmup_steps = 1
    gaussians = make_gaussians(n=4)
    trainer = SplatTrainer(gaussians, small_opt, pipe)
    batch = make_batch([camera])

    trainer.step(batch)
    trainer.step(batch)
    assert trainer.stats.grad_accum.sum() == 0
    assert trainer.stats.visibility_count.sum() == 0

    trainer.step(batch)
    assert trainer.stats.grad_accum.sum() > 0
    assert trainer.stats.visibility_count.max() == 1
    assert trainer.stats.max_radii2D.max() > 0


def test_refine_runs_on_schedule(small_opt, pipe, camera):
    small_opt.refine_every = 2
    gaussians = make_gaussians(n=4)
    trainer = SplatTrainer(gaussians, small_opt, pipe)
    batch = make_batch([camera])

    results = [trainer.step(batch) for _ in range(3)]

    assert results[0].refine is None
    assert results[1].refine is None
    report = results[2].refine
    assert report is not None
    assert report.iteration == 2
    assert report.num_after == gaussians.num_points
    assert len(trainer.stats) == gaussians.num_points
    assert trainer.stats.grad_accum.sum() == 0
    assert len(trainer.optimizer.optimizer.state) == 0


def test_batch_of_two_views(small_opt, pipe):
    cameras = [make_camera(uid=0), make_camera(uid=1, T=np.array([0.1, 0.0, 0.0]))]
    trainer = SplatTrainer(make_gaussians(n=5), small_opt, pipe)
    trainer.step(make_batch(cameras))
    stats = trainer.step(make_batch(cameras))
    assert stats.pred_images.shape == (2, 3, IMAGE_SIZE, IMAGE_SIZE)
    assert len(stats.auxes) == 2
    # Summed over the views, so one count per iteration
    assert trainer.stats.visibility_count.max() <= 2


def test_ssim_and_huber_loss(small_opt, pipe, camera):
    small_opt.ssim_weight = 0.2
    small_opt.pixel_loss = "huber"
    stats = SplatTrainer(make_gaussians(n=4), small_opt, pipe).step(make_batch([camera]))
    assert np.isfinite(stats.loss)


def test_invalid_loss_configuration(small_opt, pipe):
    small_opt.ssim_weight = 1.5
    with pytest.raises(ValueError):
        SplatTrainer(make_gaussians(n=2), small_opt, pipe)
    small_opt.ssim_weight = 0.0
    small_opt.pixel_loss = "l3"
    with pytest.raises(ValueError):
        SplatTrainer(make_gaussians(n=2), small_opt, pipe)


def test_no_visible_points_is_fatal(small_opt, pipe, camera):
    gaussians = make_gaussians(n=3, xyz=torch.tensor([[0.0, 0.0, -3.0]] * 3))
    trainer = SplatTrainer(gaussians, small_opt, pipe)
    with pytest.raises(MissingGradientError):
        trainer.step(make_batch([camera]))


def test_non_finite_parameters_abort(small_opt, pipe, camera):
    gaussians = make_gaussians(n=3)
    with torch.no_grad():
        gaussians._features_dc[0, 0, 0] = float("nan")
    trainer = SplatTrainer(gaussians, small_opt, pipe)
    with pytest.raises(NonFiniteError):
        trainer.step(make_batch([camera]))


def test_random_background(small_opt, pipe):
    small_opt.random_bck_color = True
    trainer = SplatTrainer(make_gaussians(n=2), small_opt, pipe)
    first = trainer.pick_background()
    second = trainer.pick_background()
    assert first.shape == (3,)
    assert not torch.equal(first, second)


def test_sh_degree_ramp(small_opt, pipe, camera):
    small_opt.sh_increase_every = 1
    gaussians = make_gaussians(n=3, sh_degree=1)
    trainer = SplatTrainer(gaussians, small_opt, pipe)
    batch = make_batch([camera])
    trainer.step(batch)
    assert gaussians.active_sh_degree == 0
    trainer.step(batch)
    assert gaussians.active_sh_degree == 1


def test_capture_and_restore(small_opt, pipe, camera):
    trainer = SplatTrainer(make_gaussians(n=4), small_opt, pipe)
    batch = make_batch([camera])
    trainer.step(batch)
    trainer.step(batch)
    checkpoint = trainer.capture()

    restored = SplatTrainer(make_gaussians(n=4, seed=5), small_opt, pipe)
    restored.restore(checkpoint)
    assert restored.iteration == 2
    assert torch.equal(restored.gaussians.get_xyz.detach(), trainer.gaussians.get_xyz.detach())
    assert len(restored.optimizer.optimizer.state) == 6
    assert len(restored.stats) == 4
    restored.step(batch)
