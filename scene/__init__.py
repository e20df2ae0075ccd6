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
import os
import random
import shutil
from dataclasses import dataclass
from typing import List

import torch

from scene.cameras import Camera
from scene.dataset_readers import sceneLoadTypeCallbacks
from scene.gaussian_model import GaussianModel
from utils.camera_utils import cameraList_from_camInfos, camera_to_JSON
from utils.system_utils import searchForMaxIteration


@dataclass
class SceneBatch:
    cameras: List[Camera]
    # [B, 3, H, W]
    gt_images: torch.Tensor

    def __len__(self):
        return len(self.cameras)

    @property
    def img_size(self):
        return (self.gt_images.shape[-1], self.gt_images.shape[-2])


class Scene:

    gaussians : GaussianModel

    def __init__(self, args, gaussians : GaussianModel, load_iteration=None, shuffle=True, resolution_scales=[1.0], scene_info=None):
        """
        :param args: ModelParams group (source_path, model_path, ...)
        :param scene_info: already loaded SceneInfo; skips reading ``source_path``
        """
        self.model_path = args.model_path
        self.loaded_iter = None
        self.gaussians = gaussians

        if load_iteration:
            if load_iteration == -1:
                self.loaded_iter = searchForMaxIteration(os.path.join(self.model_path, "point_cloud"))
            else:
                self.loaded_iter = load_iteration
            print("Loading trained model at iteration {}".format(self.loaded_iter))

        self.train_cameras = {}
        self.test_cameras = {}

        if scene_info is None:
            if os.path.exists(os.path.join(args.source_path, "transforms_train.json")):
                print("Found transforms_train.json file, assuming Blender data set!")
                scene_info = sceneLoadTypeCallbacks["Blender"](args.source_path, args.white_background, args.eval,
                                                               num_pts=args.init_points, init_extent=args.init_extent)
            else:
                raise ValueError(f"Could not recognize scene type at {args.source_path}")

        if not self.loaded_iter:
            os.makedirs(self.model_path, exist_ok=True)
            if scene_info.ply_path is not None:
                shutil.copyfile(scene_info.ply_path, os.path.join(self.model_path, "input.ply"))
            json_cams = []
            camlist = []
            if scene_info.test_cameras:
                camlist.extend(scene_info.test_cameras)
            if scene_info.train_cameras:
                camlist.extend(scene_info.train_cameras)
            for id, cam in enumerate(camlist):
                json_cams.append(camera_to_JSON(id, cam))
            with open(os.path.join(self.model_path, "cameras.json"), 'w') as file:
                json.dump(json_cams, file)

        train_cam_infos = list(scene_info.train_cameras)
        test_cam_infos = list(scene_info.test_cameras)
        if shuffle:
            random.shuffle(train_cam_infos)  # Multi-res consistent random shuffling
            random.shuffle(test_cam_infos)  # Multi-res consistent random shuffling

        self.cameras_extent = scene_info.nerf_normalization["radius"]

        for resolution_scale in resolution_scales:
            print("Loading Training Cameras")
            self.train_cameras[resolution_scale] = cameraList_from_camInfos(train_cam_infos, resolution_scale, args)
            print("Loading Test Cameras")
            self.test_cameras[resolution_scale] = cameraList_from_camInfos(test_cam_infos, resolution_scale, args)

        if self.loaded_iter:
            self.gaussians.load_ply(os.path.join(self.model_path,
                                                 "point_cloud",
                                                 "iteration_" + str(self.loaded_iter),
                                                 "point_cloud.ply"))
        else:
            self.gaussians.create_from_pcd(scene_info.point_cloud, self.cameras_extent)

        self._viewpoint_stack = []

    def save(self, iteration):
        point_cloud_path = os.path.join(self.model_path, "point_cloud/iteration_{}".format(iteration))
        self.gaussians.save_ply(os.path.join(point_cloud_path, "point_cloud.ply"))

    def getTrainCameras(self, scale=1.0):
        return self.train_cameras[scale]

    def getTestCameras(self, scale=1.0):
        return self.test_cameras[scale]

    def getTrainBatch(self, batch_size=1, scale=1.0):
        """
        Pop ``batch_size`` cameras from a shuffled stack of the training
        cameras, refilling it when empty.
        """
        cameras = []
        for _ in range(batch_size):
            if not self._viewpoint_stack:
                self._viewpoint_stack = self.getTrainCameras(scale).copy()
                random.shuffle(self._viewpoint_stack)
            cameras.append(self._viewpoint_stack.pop())

        sizes = {(cam.image_height, cam.image_width) for cam in cameras}
        if len(sizes) > 1:
            raise ValueError(f"Cameras of one batch must share the image size, got {sorted(sizes)}")
        gt_images = torch.stack([cam.original_image for cam in cameras], dim=0)
        return SceneBatch(cameras=cameras, gt_images=gt_images)
