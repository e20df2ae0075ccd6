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

from conftest import make_gaussians
from scene.gaussian_model import GaussianModel, nearest_neighbor_dist2
from utils.errors import PointSetConsistencyError
from utils.graphics_utils import BasicPointCloud


def test_registered_arrays_share_length():
    gaussians = make_gaussians(n=5)
    points = gaussians.get_points()
    assert set(points) == {"xyz", "f_dc", "f_rest", "opacity", "scaling", "rotation"}
    assert {t.shape[0] for t in points.values()} == {5}
    assert all(isinstance(t, torch.nn.Parameter) for t in points.values())


def test_set_points_rejects_unequal_lengths():
    gaussians = make_gaussians(n=4)
    points = {name: t.detach() for name, t in gaussians.get_points().items()}
    points["opacity"] = points["opacity"][:3]
    with pytest.raises(PointSetConsistencyError):
        gaussians.set_points(points)


def test_select_points_keeps_given_order():
    gaussians = make_gaussians(n=6)
    before = {name: t.detach().clone() for name, t in gaussians.get_points().items()}
    gaussians.select_points(torch.tensor([4, 1, 2]))
    assert gaussians.num_points == 3
    for name, tensor in gaussians.get_points().items():
        assert torch.equal(tensor.detach(), before[name][[4, 1, 2]])


def test_cat_points_appends_every_array():
    gaussians = make_gaussians(n=3)
    extra = make_gaussians(n=2, seed=1)
    rows = {name: t.detach() for name, t in extra.get_points().items()}
    gaussians.cat_points(rows)
    assert gaussians.num_points == 5
    assert torch.equal(gaussians.get_xyz.detach()[3:], rows["xyz"])


def test_cat_points_rejects_missing_or_ragged_rows():
    gaussians = make_gaussians(n=3)
    rows = {name: t.detach()[:1] for name, t in gaussians.get_points().items()}

    missing = dict(rows)
    del missing["rotation"]
    with pytest.raises(PointSetConsistencyError):
        gaussians.cat_points(missing)

    ragged = dict(rows)
    ragged["xyz"] = torch.zeros((2, 3))
    with pytest.raises(PointSetConsistencyError):
        gaussians.cat_points(ragged)

    assert gaussians.num_points == 3


def test_normalize_rotations_keeps_parameter_identity():
    rotation = torch.tensor([[2.0, 0.0, 0.0, 0.0], [1.0, 1.0, 1.0, 1.0], [0.0, 0.0, 3.0, 4.0]])
    gaussians = make_gaussians(n=3, rotation=rotation)
    param = gaussians._rotation
    gaussians.normalize_rotations()
    assert gaussians._rotation is param
    assert torch.allclose(gaussians._rotation.norm(dim=-1), torch.ones(3), atol=1e-6)


def test_reset_opacity_sets_effective_value():
    gaussians = make_gaussians(n=4)
    gaussians.reset_opacity(0.2)
    assert torch.allclose(gaussians.get_opacity, torch.full((4, 1), 0.2), atol=1e-6)


def test_oneup_sh_degree_stops_at_max():
    gaussians = make_gaussians(n=2, sh_degree=1)
    gaussians.oneupSHdegree()
    gaussians.oneupSHdegree()
    assert gaussians.active_sh_degree == 1


def test_nearest_neighbor_dist2():
    points = torch.tensor([[0.0, 0.0, 0.0], [1.0, 0.0, 0.0], [3.0, 0.0, 0.0]])
    d2 = nearest_neighbor_dist2(points, k=1)
    assert torch.allclose(d2, torch.tensor([1.0, 1.0, 4.0]))


def test_create_from_pcd_initialises_points():
    pcd = BasicPointCloud(points=np.random.rand(30, 3), colors=np.random.rand(30, 3), normals=np.zeros((30, 3)))
    gaussians = GaussianModel(2)
    gaussians.create_from_pcd(pcd, spatial_lr_scale=2.5)
    assert gaussians.num_points == 30
    assert gaussians._features_rest.shape == (30, 8, 3)
    assert gaussians.spatial_lr_scale == 2.5
    assert torch.allclose(gaussians.get_opacity, torch.full((30, 1), 0.1), atol=1e-6)
    assert torch.allclose(gaussians.get_rotation[:, 0], torch.ones(30))


def test_ply_round_trip(tmp_path):
    gaussians = make_gaussians(n=7, sh_degree=1)
    path = str(tmp_path / "point_cloud" / "iteration_1" / "point_cloud.ply")
    gaussians.save_ply(path)

    loaded = GaussianModel(1)
    loaded.load_ply(path)
    assert loaded.num_points == 7
    assert loaded.active_sh_degree == 1
    for name, tensor in gaussians.get_points().items():
        assert torch.allclose(loaded.get_points()[name].detach(), tensor.detach(), atol=1e-6), name


def test_load_ply_rejects_wrong_sh_degree(tmp_path):
    gaussians = make_gaussians(n=3, sh_degree=1)
    path = str(tmp_path / "pc.ply")
    gaussians.save_ply(path)
    with pytest.raises(PointSetConsistencyError):
        GaussianModel(3).load_ply(path)


def test_capture_restore():
    gaussians = make_gaussians(n=4)
    gaussians.active_sh_degree = 1
    restored = GaussianModel(1)
    restored.restore(gaussians.capture())
    assert restored.active_sh_degree == 1
    assert restored.spatial_lr_scale == 1.0
    assert torch.equal(restored.get_xyz.detach(), gaussians.get_xyz.detach())
