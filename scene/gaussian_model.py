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

import os

import numpy as np
import torch
from plyfile import PlyData, PlyElement
from torch import nn

from utils.errors import PointSetConsistencyError
from utils.general_utils import inverse_sigmoid, build_scaling_rotation
from utils.graphics_utils import BasicPointCloud
from utils.sh_utils import RGB2SH
from utils.system_utils import mkdir_p


def nearest_neighbor_dist2(points, k=3, chunk_size=1024):
    """Mean squared distance of every point to its ``k`` nearest neighbours."""
    n = points.shape[0]
    if n < 2:
        return torch.ones((n,), dtype=points.dtype, device=points.device)
    k = min(k, n - 1)
    out = []
    for start in range(0, n, chunk_size):
        block = points[start:start + chunk_size]
        d2 = torch.cdist(block, points).pow(2)
        # Drop the zero distance of each point to itself
        d2 = d2.topk(k + 1, dim=1, largest=False).values[:, 1:]
        out.append(d2.mean(dim=1))
    return torch.cat(out, dim=0)


class GaussianModel:
    """
    Point Set of 3D Gaussians.

    Every learnable per-point array is registered in ``param_names`` and
    stored as ``nn.Parameter`` with the row count N as first dimension.
    Structural edits go through ``select_points`` / ``cat_points`` which loop
    over the registered arrays, so all of them always change together.
    """

    # Optimizer group name -> attribute holding the tensor
    param_attrs = {
        "xyz": "_xyz",
        "f_dc": "_features_dc",
        "f_rest": "_features_rest",
        "opacity": "_opacity",
        "scaling": "_scaling",
        "rotation": "_rotation",
    }
    param_names = tuple(param_attrs.keys())

    def setup_functions(self):
        def build_covariance_from_scaling_rotation(scaling, scaling_modifier, rotation):
            L = build_scaling_rotation(scaling_modifier * scaling, rotation)
            actual_covariance = L @ L.transpose(1, 2)
            return actual_covariance

        self.scaling_activation = torch.exp

        self.covariance_activation = build_covariance_from_scaling_rotation

        self.opacity_activation = torch.sigmoid
        self.inverse_opacity_activation = inverse_sigmoid

        self.rotation_activation = torch.nn.functional.normalize

    def __init__(self, sh_degree: int, device="cpu"):
        self.active_sh_degree = 0
        self.max_sh_degree = sh_degree
        self.device = torch.device(device)
        self._xyz = torch.empty(0)
        self._features_dc = torch.empty(0)
        self._features_rest = torch.empty(0)
        self._scaling = torch.empty(0)
        self._rotation = torch.empty(0)
        self._opacity = torch.empty(0)
        self.spatial_lr_scale = 0
        self.setup_functions()

    def capture(self):
        return (
            self.active_sh_degree,
            self._xyz,
            self._features_dc,
            self._features_rest,
            self._scaling,
            self._rotation,
            self._opacity,
            self.spatial_lr_scale,
        )

    def restore(self, model_args):
        (self.active_sh_degree,
         xyz,
         features_dc,
         features_rest,
         scaling,
         rotation,
         opacity,
         self.spatial_lr_scale) = model_args
        self.set_points({
            "xyz": xyz,
            "f_dc": features_dc,
            "f_rest": features_rest,
            "opacity": opacity,
            "scaling": scaling,
            "rotation": rotation,
        })

    @property
    def num_points(self):
        return self._xyz.shape[0]

    @property
    def get_scaling(self):
        return self.scaling_activation(self._scaling)

    @property
    def get_rotation(self):
        return self.rotation_activation(self._rotation)

    @property
    def get_xyz(self):
        return self._xyz

    @property
    def get_features(self):
        features_dc = self._features_dc
        features_rest = self._features_rest
        return torch.cat((features_dc, features_rest), dim=1)

    @property
    def get_opacity(self):
        return self.opacity_activation(self._opacity)

    def get_covariance(self, scaling_modifier=1):
        return self.covariance_activation(self.get_scaling, scaling_modifier, self._rotation)

    def oneupSHdegree(self):
        if self.active_sh_degree < self.max_sh_degree:
            self.active_sh_degree += 1

    # ------------------------------------------------------------------
    # Registered arrays
    # ------------------------------------------------------------------

    def get_points(self):
        """Name -> parameter for every registered array."""
        return {name: getattr(self, attr) for name, attr in self.param_attrs.items()}

    def set_points(self, tensors_dict):
        missing = set(self.param_names) - set(tensors_dict)
        extra = set(tensors_dict) - set(self.param_names)
        if missing or extra:
            raise PointSetConsistencyError(
                f"Point arrays do not match the registered names (missing: {sorted(missing)}, extra: {sorted(extra)})")
        for name, attr in self.param_attrs.items():
            tensor = tensors_dict[name].detach().to(device=self.device, dtype=torch.float)
            setattr(self, attr, nn.Parameter(tensor.contiguous().requires_grad_(True)))
        self.check_consistency()

    def check_consistency(self):
        lengths = {name: tensor.shape[0] for name, tensor in self.get_points().items()}
        if len(set(lengths.values())) > 1:
            raise PointSetConsistencyError(f"Point arrays disagree in length: {lengths}")
        n_coeffs = (self.max_sh_degree + 1) ** 2
        if self._features_dc.shape[1:] != (1, 3) or self._features_rest.shape[1:] != (n_coeffs - 1, 3):
            raise PointSetConsistencyError(
                f"Color coefficients have shapes {tuple(self._features_dc.shape)} and "
                f"{tuple(self._features_rest.shape)} for SH degree {self.max_sh_degree}")

    def select_points(self, indices):
        """Keep only the rows at ``indices`` (in that order) in every registered array."""
        indices = indices.to(self.device)
        self.set_points({name: tensor[indices] for name, tensor in self.get_points().items()})

    def cat_points(self, rows):
        """Append ``rows`` (name -> tensor) to every registered array."""
        missing = set(self.param_names) - set(rows)
        extra = set(rows) - set(self.param_names)
        if missing or extra:
            raise PointSetConsistencyError(
                f"New rows do not match the registered names (missing: {sorted(missing)}, extra: {sorted(extra)})")
        counts = {name: rows[name].shape[0] for name in self.param_names}
        if len(set(counts.values())) > 1:
            raise PointSetConsistencyError(f"New rows disagree in length: {counts}")

        current = self.get_points()
        new_points = {}
        for name in self.param_names:
            tensor = current[name].detach()
            extension = rows[name].detach().to(device=tensor.device, dtype=tensor.dtype)
            if extension.shape[1:] != tensor.shape[1:]:
                raise PointSetConsistencyError(
                    f"New rows for '{name}' have shape {tuple(extension.shape[1:])}, expected {tuple(tensor.shape[1:])}")
            new_points[name] = torch.cat((tensor, extension), dim=0)
        self.set_points(new_points)

    def normalize_rotations(self):
        with torch.no_grad():
            self._rotation.copy_(self.rotation_activation(self._rotation, dim=-1))

    def reset_opacity(self, opacity):
        """Overwrite every point's raw opacity so that ``sigmoid(raw) == opacity``."""
        with torch.no_grad():
            value = self.inverse_opacity_activation(torch.tensor(opacity, dtype=self._opacity.dtype))
            self._opacity.fill_(value.item())

    # ------------------------------------------------------------------
    # Initialisation
    # ------------------------------------------------------------------

    def create_from_pcd(self, pcd: BasicPointCloud, spatial_lr_scale: float):
        self.spatial_lr_scale = spatial_lr_scale
        fused_point_cloud = torch.tensor(np.asarray(pcd.points)).float().to(self.device)
        fused_color = RGB2SH(torch.tensor(np.asarray(pcd.colors)).float().to(self.device))
        features = torch.zeros((fused_color.shape[0], 3, (self.max_sh_degree + 1) ** 2)).float().to(self.device)
        features[:, :3, 0] = fused_color
        features[:, 3:, 1:] = 0.0

        print("Number of points at initialisation : ", fused_point_cloud.shape[0])

        dist2 = torch.clamp_min(nearest_neighbor_dist2(fused_point_cloud), 0.0000001)
        scales = torch.log(torch.sqrt(dist2))[..., None].repeat(1, 3)
        rots = torch.zeros((fused_point_cloud.shape[0], 4), device=self.device)
        rots[:, 0] = 1

        opacities = inverse_sigmoid(0.1 * torch.ones((fused_point_cloud.shape[0], 1), dtype=torch.float, device=self.device))

        self.set_points({
            "xyz": fused_point_cloud,
            "f_dc": features[:, :, 0:1].transpose(1, 2),
            "f_rest": features[:, :, 1:].transpose(1, 2),
            "opacity": opacities,
            "scaling": scales,
            "rotation": rots,
        })

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def construct_list_of_attributes(self):
        l = ['x', 'y', 'z', 'nx', 'ny', 'nz']
        # All channels except the 3 DC
        for i in range(self._features_dc.shape[1] * self._features_dc.shape[2]):
            l.append('f_dc_{}'.format(i))
        for i in range(self._features_rest.shape[1] * self._features_rest.shape[2]):
            l.append('f_rest_{}'.format(i))
        l.append('opacity')
        for i in range(self._scaling.shape[1]):
            l.append('scale_{}'.format(i))
        for i in range(self._rotation.shape[1]):
            l.append('rot_{}'.format(i))
        return l

    def save_ply(self, path):
        mkdir_p(os.path.dirname(path))

        xyz = self._xyz.detach().cpu().numpy()
        normals = np.zeros_like(xyz)
        f_dc = self._features_dc.detach().transpose(1, 2).flatten(start_dim=1).contiguous().cpu().numpy()
        f_rest = self._features_rest.detach().transpose(1, 2).flatten(start_dim=1).contiguous().cpu().numpy()
        opacities = self._opacity.detach().cpu().numpy()
        scale = self._scaling.detach().cpu().numpy()
        rotation = self._rotation.detach().cpu().numpy()

        dtype_full = [(attribute, 'f4') for attribute in self.construct_list_of_attributes()]

        elements = np.empty(xyz.shape[0], dtype=dtype_full)
        attributes = np.concatenate((xyz, normals, f_dc, f_rest, opacities, scale, rotation), axis=1)
        elements[:] = list(map(tuple, attributes))
        el = PlyElement.describe(elements, 'vertex')
        PlyData([el]).write(path)

    def load_ply(self, path):
        plydata = PlyData.read(path)

        xyz = np.stack((np.asarray(plydata.elements[0]["x"]),
                        np.asarray(plydata.elements[0]["y"]),
                        np.asarray(plydata.elements[0]["z"])), axis=1)
        opacities = np.asarray(plydata.elements[0]["opacity"])[..., np.newaxis]

        features_dc = np.zeros((xyz.shape[0], 3, 1))
        features_dc[:, 0, 0] = np.asarray(plydata.elements[0]["f_dc_0"])
        features_dc[:, 1, 0] = np.asarray(plydata.elements[0]["f_dc_1"])
        features_dc[:, 2, 0] = np.asarray(plydata.elements[0]["f_dc_2"])

        extra_f_names = [p.name for p in plydata.elements[0].properties if p.name.startswith("f_rest_")]
        extra_f_names = sorted(extra_f_names, key=lambda x: int(x.split('_')[-1]))
        if len(extra_f_names) != 3 * (self.max_sh_degree + 1) ** 2 - 3:
            raise PointSetConsistencyError(
                f"{path} holds {len(extra_f_names)} f_rest channels, SH degree {self.max_sh_degree} "
                f"expects {3 * (self.max_sh_degree + 1) ** 2 - 3}")
        features_extra = np.zeros((xyz.shape[0], len(extra_f_names)))
        for idx, attr_name in enumerate(extra_f_names):
            features_extra[:, idx] = np.asarray(plydata.elements[0][attr_name])
        # Reshape (P,F*SH_coeffs) to (P, F, SH_coeffs except DC)
        features_extra = features_extra.reshape((features_extra.shape[0], 3, (self.max_sh_degree + 1) ** 2 - 1))

        scale_names = [p.name for p in plydata.elements[0].properties if p.name.startswith("scale_")]
        scale_names = sorted(scale_names, key=lambda x: int(x.split('_')[-1]))
        scales = np.zeros((xyz.shape[0], len(scale_names)))
        for idx, attr_name in enumerate(scale_names):
            scales[:, idx] = np.asarray(plydata.elements[0][attr_name])

        rot_names = [p.name for p in plydata.elements[0].properties if p.name.startswith("rot")]
        rot_names = sorted(rot_names, key=lambda x: int(x.split('_')[-1]))
        rots = np.zeros((xyz.shape[0], len(rot_names)))
        for idx, attr_name in enumerate(rot_names):
            rots[:, idx] = np.asarray(plydata.elements[0][attr_name])

        self.set_points({
            "xyz": torch.tensor(xyz, dtype=torch.float),
            "f_dc": torch.tensor(features_dc, dtype=torch.float).transpose(1, 2),
            "f_rest": torch.tensor(features_extra, dtype=torch.float).transpose(1, 2),
            "opacity": torch.tensor(opacities, dtype=torch.float),
            "scaling": torch.tensor(scales, dtype=torch.float),
            "rotation": torch.tensor(rots, dtype=torch.float),
        })

        self.active_sh_degree = self.max_sh_degree
