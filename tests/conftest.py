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

import json
import math
import os
from argparse import ArgumentParser

import numpy as np
import pytest
import torch
from PIL import Image

from arguments import OptimizationParams, PipelineParams
from scene import SceneBatch
from scene.cameras import Camera
from scene.gaussian_model import GaussianModel

IMAGE_SIZE = 16


def make_gaussians(n=8, sh_degree=1, xyz=None, opacity=None, scale=None, rotation=None, seed=0):
    """Point set of ``n`` splats in front of the default test camera."""
    g = torch.Generator().manual_seed(seed)
    if xyz is None:
        xyz = torch.cat((torch.rand((n, 2), generator=g) - 0.5, 3.0 + torch.rand((n, 1), generator=g)), dim=1)
    if opacity is None:
        opacity = torch.full((n, 1), 2.0)
    if scale is None:
        scale = torch.full((n, 3), math.log(0.3))
    if rotation is None:
        rotation = torch.zeros((n, 4))
        rotation[:, 0] = 1.0
    n_rest = (sh_degree + 1) ** 2 - 1
    gaussians = GaussianModel(sh_degree, device="cpu")
    gaussians.set_points({
        "xyz": torch.as_tensor(xyz, dtype=torch.float),
        "f_dc": torch.rand((n, 1, 3), generator=g),
        "f_rest": 0.1 * torch.rand((n, n_rest, 3), generator=g),
        "opacity": torch.as_tensor(opacity, dtype=torch.float),
        "scaling": torch.as_tensor(scale, dtype=torch.float),
        "rotation": torch.as_tensor(rotation, dtype=torch.float),
    })
    gaussians.spatial_lr_scale = 1.0
    return gaussians


def make_camera(uid=0, image=None, size=IMAGE_SIZE, T=None):
    """Camera at the origin looking down +z with a 90 degree field of view."""
    if image is None:
        image = torch.rand((3, size, size), generator=torch.Generator().manual_seed(100 + uid))
    return Camera(uid=uid, R=np.eye(3), T=np.zeros(3) if T is None else T,
                  FoVx=math.pi / 2, FoVy=math.pi / 2, image=image,
                  image_name="cam{}".format(uid), data_device="cpu")


def make_batch(cameras):
    return SceneBatch(cameras=list(cameras), gt_images=torch.stack([c.original_image for c in cameras], dim=0))


def default_params(group_cls):
    parser = ArgumentParser()
    group = group_cls(parser)
    return group.extract(parser.parse_args([]))


def write_blender_scene(root, size=8):
    """Two train and two test views of random RGBA images, cameras at z = 4 looking at the origin."""
    os.makedirs(os.path.join(root, "train"))
    for split in ("train", "test"):
        frames = []
        for i in range(2):
            name = "train/r_{}{}".format(split, i)
            rgba = (np.random.rand(size, size, 4) * 255).astype(np.uint8)
            Image.fromarray(rgba, "RGBA").save(os.path.join(root, name + ".png"))
            c2w = np.eye(4)
            c2w[0, 3] = 0.5 * i
            c2w[2, 3] = 4.0
            frames.append({"file_path": name, "transform_matrix": c2w.tolist()})
        with open(os.path.join(root, "transforms_{}.json".format(split)), "w") as f:
            json.dump({"camera_angle_x": 0.7, "frames": frames}, f)


@pytest.fixture(autouse=True)
def seeded():
    torch.manual_seed(0)
    np.random.seed(0)


@pytest.fixture
def opt():
    return default_params(OptimizationParams)


@pytest.fixture
def pipe():
    return default_params(PipelineParams)


@pytest.fixture
def camera():
    return make_camera()
