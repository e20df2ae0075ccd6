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
import torch
from torch import nn

from utils.graphics_utils import getWorld2View


class Camera(nn.Module):
    """
    Pinhole camera with its ground-truth image.

    ``R`` and ``T`` map world to camera coordinates (X_cam = R @ X_world + T),
    with the camera looking down +z, x to the right and y down.
    """

    def __init__(self, uid, R, T, FoVx, FoVy, image, image_name, gt_alpha_mask=None, data_device="cpu"):
        super(Camera, self).__init__()

        self.uid = uid
        self.R = np.asarray(R, dtype=np.float32)
        self.T = np.asarray(T, dtype=np.float32)
        self.FoVx = FoVx
        self.FoVy = FoVy
        self.image_name = image_name

        try:
            self.data_device = torch.device(data_device)
        except RuntimeError as e:
            print(e)
            print(f"[Warning] Custom device {data_device} failed, fallback to default cpu device")
            self.data_device = torch.device("cpu")

        self.original_image = image.clamp(0.0, 1.0).to(self.data_device)
        self.image_width = self.original_image.shape[2]
        self.image_height = self.original_image.shape[1]

        if gt_alpha_mask is not None:
            self.original_image *= gt_alpha_mask.to(self.data_device)

        self.world_view_transform = torch.tensor(getWorld2View(self.R, self.T)).to(self.data_device)
        self.camera_center = torch.tensor(-self.R.T @ self.T, dtype=torch.float32).to(self.data_device)
