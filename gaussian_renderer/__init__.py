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

import math
from dataclasses import dataclass
from typing import Tuple

import torch

from scene.gaussian_model import GaussianModel
from utils.graphics_utils import fov2focal
from utils.sh_utils import eval_sh

TILE_SIZE = 16
NEAR_PLANE = 0.2
ALPHA_MIN = 1.0 / 255.0
ALPHA_MAX = 0.99
LOW_PASS = 0.3


@dataclass
class RenderAux:
    """Side information of one render call, in the compacted visible index space."""
    num_visible: int
    # Compacted (depth sorted) index -> row of the point set
    global_from_compact_gid: torch.Tensor
    # Screen radius in pixels of each compacted splat
    radii: torch.Tensor
    # Sum over visible splats of the 16x16 tiles their footprint touches
    num_intersects: int
    # (width, height)
    img_size: Tuple[int, int]


def project_gaussians(viewpoint_camera, means3D, cov3D, means2D_offset):
    """
    EWA projection of 3D Gaussians into the image.

    Returns pixel means (N,2), conics (N,3), radii (N,), depths (N,) and
    the validity mask. ``means2D_offset`` is added in normalized device
    coordinates so its gradient is the screen-space positional gradient.
    """
    H = int(viewpoint_camera.image_height)
    W = int(viewpoint_camera.image_width)
    tanfovx = math.tan(viewpoint_camera.FoVx * 0.5)
    tanfovy = math.tan(viewpoint_camera.FoVy * 0.5)
    fx = fov2focal(viewpoint_camera.FoVx, W)
    fy = fov2focal(viewpoint_camera.FoVy, H)

    viewmatrix = viewpoint_camera.world_view_transform.to(means3D.device, means3D.dtype)
    Rw = viewmatrix[:3, :3]
    tw = viewmatrix[:3, 3]
    p_view = means3D @ Rw.T + tw
    depths = p_view[:, 2]
    in_front = depths > NEAR_PLANE
    z = torch.where(in_front, depths, torch.ones_like(depths))

    ndc = torch.stack((p_view[:, 0] / (z * tanfovx), p_view[:, 1] / (z * tanfovy)), dim=-1)
    ndc = ndc + means2D_offset
    half = torch.tensor([W * 0.5, H * 0.5], dtype=means3D.dtype, device=means3D.device)
    means_pix = (ndc + 1.0) * half

    # Jacobian of the perspective map, with the guard band of the CUDA rasterizer
    limx = 1.3 * tanfovx
    limy = 1.3 * tanfovy
    tx = (p_view[:, 0] / z).clamp(-limx, limx) * z
    ty = (p_view[:, 1] / z).clamp(-limy, limy) * z
    J = torch.zeros((means3D.shape[0], 2, 3), dtype=means3D.dtype, device=means3D.device)
    J[:, 0, 0] = fx / z
    J[:, 0, 2] = -fx * tx / (z * z)
    J[:, 1, 1] = fy / z
    J[:, 1, 2] = -fy * ty / (z * z)
    T = J @ Rw
    cov2D = T @ cov3D @ T.transpose(1, 2)

    a = cov2D[:, 0, 0] + LOW_PASS
    b = cov2D[:, 0, 1]
    c = cov2D[:, 1, 1] + LOW_PASS
    det = a * c - b * b
    valid = in_front & (det > 0)
    det_safe = torch.where(valid, det, torch.ones_like(det))
    conics = torch.stack((c / det_safe, -b / det_safe, a / det_safe), dim=-1)

    mid = 0.5 * (a + c)
    lambda1 = mid + torch.sqrt(torch.clamp_min(mid * mid - det, 0.1))
    radii = torch.ceil(3.0 * torch.sqrt(torch.clamp_min(lambda1, 0.0))).detach()
    radii = torch.where(valid, radii, torch.zeros_like(radii))

    on_screen = ((means_pix[:, 0] + radii > 0) & (means_pix[:, 0] - radii < W) &
                 (means_pix[:, 1] + radii > 0) & (means_pix[:, 1] - radii < H)).detach()
    valid = valid & on_screen & (radii > 0)
    radii = torch.where(valid, radii, torch.zeros_like(radii))
    return means_pix, conics, radii, depths, valid


def count_tile_intersections(means_pix, radii, width, height):
    grid_x = (width + TILE_SIZE - 1) // TILE_SIZE
    grid_y = (height + TILE_SIZE - 1) // TILE_SIZE
    m = means_pix.detach()
    min_x = torch.clamp(torch.floor((m[:, 0] - radii) / TILE_SIZE), 0, grid_x)
    max_x = torch.clamp(torch.floor((m[:, 0] + radii + TILE_SIZE - 1) / TILE_SIZE), 0, grid_x)
    min_y = torch.clamp(torch.floor((m[:, 1] - radii) / TILE_SIZE), 0, grid_y)
    max_y = torch.clamp(torch.floor((m[:, 1] + radii + TILE_SIZE - 1) / TILE_SIZE), 0, grid_y)
    return int(((max_x - min_x) * (max_y - min_y)).sum().item())


def composite(means_pix, conics, opacities, colors, radii, bg_color, width, height, pixel_chunk):
    """
    Front-to-back alpha compositing of depth-sorted splats over every pixel.
    Pixels are processed ``pixel_chunk`` at a time.
    """
    device = means_pix.device
    dtype = means_pix.dtype
    ys, xs = torch.meshgrid(torch.arange(height, device=device, dtype=dtype),
                            torch.arange(width, device=device, dtype=dtype), indexing="ij")
    pixels = torch.stack((xs.reshape(-1) + 0.5, ys.reshape(-1) + 0.5), dim=-1)

    out = []
    for start in range(0, pixels.shape[0], pixel_chunk):
        pix = pixels[start:start + pixel_chunk]
        d = pix[:, None, :] - means_pix[None, :, :]
        dx = d[..., 0]
        dy = d[..., 1]
        power = -0.5 * (conics[None, :, 0] * dx * dx + conics[None, :, 2] * dy * dy) - conics[None, :, 1] * dx * dy
        alpha = torch.clamp_max(opacities[None, :] * torch.exp(torch.clamp_max(power, 0.0)), ALPHA_MAX)
        inside = (dx.abs() <= radii[None, :]) & (dy.abs() <= radii[None, :]) & (power <= 0.0) & (alpha >= ALPHA_MIN)
        alpha = torch.where(inside, alpha, torch.zeros_like(alpha))

        transmittance = torch.cumprod(1.0 - alpha, dim=1)
        T = torch.cat((torch.ones_like(transmittance[:, :1]), transmittance[:, :-1]), dim=1)
        weight = T * alpha
        rgb = weight @ colors + transmittance[:, -1:] * bg_color[None, :]
        out.append(rgb)

    image = torch.cat(out, dim=0)
    return image.reshape(height, width, 3).permute(2, 0, 1)


def render(viewpoint_camera, pc : GaussianModel, pipe, bg_color : torch.Tensor, scaling_modifier = 1.0, override_color = None, screenspace_points = None):
    """
    Render the scene.

    ``screenspace_points`` is the (N, 2) screen-space gradient handle. When not
    given a fresh zero tensor requiring grad is created. After backward its
    ``.grad`` holds the positional gradient in normalized device units.
    """
    means3D = pc.get_xyz
    N = means3D.shape[0]
    device = means3D.device
    H = int(viewpoint_camera.image_height)
    W = int(viewpoint_camera.image_width)
    bg_color = bg_color.to(device=device, dtype=means3D.dtype)

    # Create zero tensor. We will use it to make pytorch return gradients of the 2D (screen-space) means
    if screenspace_points is None:
        screenspace_points = torch.zeros((N, 2), dtype=means3D.dtype, device=device, requires_grad=True)
    elif screenspace_points.shape != (N, 2):
        raise ValueError(f"screenspace_points must have shape ({N}, 2), got {tuple(screenspace_points.shape)}")

    cov3D = pc.get_covariance(scaling_modifier)

    means_pix, conics, radii, depths, valid = project_gaussians(viewpoint_camera, means3D, cov3D, screenspace_points)

    # Depth-sorted visible splats define the compacted index space
    visible_idx = torch.nonzero(valid, as_tuple=False).squeeze(-1)
    order = torch.argsort(depths[visible_idx].detach())
    global_from_compact_gid = visible_idx[order]
    num_visible = int(global_from_compact_gid.shape[0])
    compact_radii = radii[global_from_compact_gid]

    aux = RenderAux(
        num_visible=num_visible,
        global_from_compact_gid=global_from_compact_gid,
        radii=compact_radii,
        num_intersects=count_tile_intersections(means_pix[global_from_compact_gid], compact_radii, W, H),
        img_size=(W, H),
    )

    if num_visible == 0:
        rendered_image = bg_color[:, None, None].expand(3, H, W).clone()
    else:
        # If precomputed colors are provided, use them. Otherwise evaluate the SHs.
        if override_color is None:
            shs_view = pc.get_features.transpose(1, 2)
            camera_center = viewpoint_camera.camera_center.to(device=device, dtype=means3D.dtype)
            dir_pp = means3D - camera_center[None, :]
            dir_pp_normalized = dir_pp / dir_pp.norm(dim=1, keepdim=True).clamp_min(1e-7)
            sh2rgb = eval_sh(pc.active_sh_degree, shs_view, dir_pp_normalized)
            colors_precomp = torch.clamp_min(sh2rgb + 0.5, 0.0)
        else:
            colors_precomp = override_color

        gid = global_from_compact_gid
        rendered_image = composite(
            means_pix[gid],
            conics[gid],
            pc.get_opacity[gid, 0],
            colors_precomp[gid],
            compact_radii,
            bg_color,
            W,
            H,
            pipe.pixel_chunk,
        )

    # Those Gaussians that were frustum culled or had a radius of 0 were not visible.
    # They will be excluded from value updates used in the splitting criteria.
    return {"render": rendered_image,
            "viewspace_points": screenspace_points,
            "visibility_filter" : radii > 0,
            "radii": radii,
            "aux": aux}
