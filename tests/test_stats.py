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

from densification.stats import GradientStats
from gaussian_renderer import RenderAux


def make_aux(gid, radii, n_visible=None):
    gid = torch.as_tensor(gid, dtype=torch.long)
    return RenderAux(num_visible=len(gid) if n_visible is None else n_visible,
                     global_from_compact_gid=gid,
                     radii=torch.as_tensor(radii, dtype=torch.float),
                     num_intersects=0, img_size=(16, 16))


def test_reset_allocates_zeroed_arrays():
    stats = GradientStats(3)
    stats.grad_accum += 1.0
    stats.reset(5)
    assert len(stats) == 5
    assert stats.grad_accum.sum() == 0
    assert stats.visibility_count.sum() == 0
    assert stats.max_radii2D.sum() == 0


def test_update_counts_only_nonzero_gradients():
    stats = GradientStats(3)
    grad = torch.tensor([[3.0, 4.0], [0.0, 0.0], [0.0, 1.0]])
    stats.update([make_aux([0, 2], [2.0, 5.0])], grad)
    assert torch.allclose(stats.grad_accum, torch.tensor([5.0, 0.0, 1.0]))
    assert torch.equal(stats.visibility_count, torch.tensor([1, 0, 1], dtype=torch.int32))


def test_compacted_radii_map_back_to_points():
    stats = GradientStats(4)
    # Compacted order is depth order, not row order
    stats.update_radii(make_aux([3, 1], [7.0, 2.0]))
    stats.update_radii(make_aux([1, 0], [4.0, 1.0]))
    assert torch.equal(stats.max_radii2D, torch.tensor([1.0, 4.0, 0.0, 7.0]))


def test_batch_update_counts_once_and_merges_all_radii():
    stats = GradientStats(3)
    auxes = [make_aux([0, 1], [3.0, 2.0]), make_aux([2, 0], [1.0, 6.0])]
    stats.update(auxes, torch.tensor([[1.0, 0.0], [0.0, 2.0], [0.0, 0.0]]))
    assert torch.equal(stats.visibility_count, torch.tensor([1, 1, 0], dtype=torch.int32))
    assert torch.equal(stats.max_radii2D, torch.tensor([6.0, 2.0, 1.0]))


def test_average_uses_visible_iterations_only():
    stats = GradientStats(1)
    aux = make_aux([0], [1.0])
    stats.update([aux], torch.tensor([[5.0, 0.0]]))
    for _ in range(3):
        stats.update([aux], torch.zeros((1, 2)))
    stats.update([aux], torch.tensor([[0.0, 5.0]]))
    assert torch.allclose(stats.average_grad(), torch.tensor([5.0]))


def test_average_of_never_seen_point_is_zero():
    stats = GradientStats(2)
    assert torch.equal(stats.average_grad(), torch.zeros(2))


def test_select_and_pad():
    stats = GradientStats(3)
    stats.grad_accum = torch.tensor([1.0, 2.0, 3.0])
    stats.select(torch.tensor([2, 0]))
    stats.pad(2)
    assert torch.equal(stats.grad_accum, torch.tensor([3.0, 1.0, 0.0, 0.0]))
    assert len(stats) == 4
    assert stats.visibility_count.shape[0] == 4
    assert stats.max_radii2D.shape[0] == 4
