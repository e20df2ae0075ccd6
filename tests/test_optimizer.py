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

import pytest
import torch

from conftest import make_gaussians
from training.optimizer import MultiGroupOptimizer
from utils.errors import PointSetConsistencyError


def quadratic_step(gaussians, optimizer, iteration=0):
    loss = sum(((t - 1.0) ** 2).sum() for t in gaussians.get_points().values())
    loss.backward()
    return optimizer.step(iteration)


def test_one_group_per_parameter(opt):
    gaussians = make_gaussians(n=3)
    optimizer = MultiGroupOptimizer(gaussians, opt)
    names = [group["name"] for group in optimizer.param_groups]
    assert names == ["xyz", "f_dc", "f_rest", "opacity", "scaling", "rotation"]
    assert optimizer.optimizer.defaults["eps"] == 1e-15


def test_position_lr_follows_schedule_and_scene_scale(opt):
    gaussians = make_gaussians(n=3)
    gaussians.spatial_lr_scale = 2.0
    optimizer = MultiGroupOptimizer(gaussians, opt)

    lrs = optimizer.update_learning_rate(0)
    assert lrs["xyz"] == pytest.approx(opt.position_lr_init * 2.0)
    lrs = optimizer.update_learning_rate(opt.schedule_steps)
    assert lrs["xyz"] == pytest.approx(opt.position_lr_final * 2.0)
    lrs = optimizer.update_learning_rate(10 * opt.schedule_steps)
    assert lrs["xyz"] == pytest.approx(opt.position_lr_final * 2.0)


def test_constant_group_lrs(opt):
    optimizer = MultiGroupOptimizer(make_gaussians(n=3), opt)
    lrs = optimizer.update_learning_rate(1234)
    assert lrs["f_dc"] == pytest.approx(opt.feature_lr)
    assert lrs["f_rest"] == pytest.approx(opt.feature_lr / 20.0)
    assert lrs["opacity"] == pytest.approx(opt.opacity_lr)
    assert lrs["scaling"] == pytest.approx(opt.scaling_lr)
    assert lrs["rotation"] == pytest.approx(opt.rotation_lr)


def test_step_updates_parameters_and_clears_grads(opt):
    gaussians = make_gaussians(n=3)
    optimizer = MultiGroupOptimizer(gaussians, opt)
    before = gaussians.get_opacity.detach().clone()
    quadratic_step(gaussians, optimizer)
    assert not torch.equal(gaussians.get_opacity.detach(), before)
    assert all(t.grad is None for t in gaussians.get_points().values())


def test_reset_drops_moments(opt):
    gaussians = make_gaussians(n=3)
    optimizer = MultiGroupOptimizer(gaussians, opt)
    quadratic_step(gaussians, optimizer)
    assert len(optimizer.optimizer.state) == 6
    optimizer.reset()
    assert len(optimizer.optimizer.state) == 0


def test_step_after_restructure_without_reset_raises(opt):
    gaussians = make_gaussians(n=4)
    optimizer = MultiGroupOptimizer(gaussians, opt)
    gaussians.select_points(torch.tensor([0, 1]))
    with pytest.raises(PointSetConsistencyError):
        optimizer.step(0)
    optimizer.reset()
    quadratic_step(gaussians, optimizer)


def test_state_dict_round_trip(opt):
    gaussians = make_gaussians(n=3)
    optimizer = MultiGroupOptimizer(gaussians, opt)
    quadratic_step(gaussians, optimizer)
    state = optimizer.state_dict()

    other = MultiGroupOptimizer(gaussians, opt)
    other.load_state_dict(state)
    assert len(other.optimizer.state) == 6
