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

from utils.errors import EmptyPointSetError, PointSetConsistencyError


def _check_lengths(gaussians, stats):
    gaussians.check_consistency()
    if stats is not None and len(stats) != gaussians.num_points:
        raise PointSetConsistencyError(
            f"Gradient statistics hold {len(stats)} rows for {gaussians.num_points} points")


def prune_points(gaussians, stats, delete_mask):
    """
    Remove the rows flagged in ``delete_mask`` from the point set and from
    the gradient statistics, keeping the survivors in their original order.

    A mask shorter than the point set is padded with False, so masks computed
    before an append stay valid. Returns the number of removed points.
    """
    n = gaussians.num_points
    delete_mask = delete_mask.to(device=gaussians.device, dtype=torch.bool).reshape(-1)
    if delete_mask.shape[0] > n:
        raise PointSetConsistencyError(f"Delete mask has {delete_mask.shape[0]} entries for {n} points")
    if delete_mask.shape[0] < n:
        padding = torch.zeros((n - delete_mask.shape[0],), dtype=torch.bool, device=delete_mask.device)
        delete_mask = torch.cat((delete_mask, padding))

    num_deleted = int(delete_mask.sum().item())
    if num_deleted == 0:
        return 0
    if num_deleted == n:
        raise EmptyPointSetError(f"Pruning would remove all {n} points")

    keep = torch.nonzero(~delete_mask, as_tuple=False).squeeze(-1)
    gaussians.select_points(keep)
    if stats is not None:
        stats.select(keep)
    _check_lengths(gaussians, stats)
    return num_deleted


def concat_points(gaussians, rows):
    """
    Append ``rows`` (optimizer group name -> tensor) to the point set.

    The gradient statistics are left alone. Returns the number of new points.
    """
    gaussians.cat_points(rows)
    gaussians.check_consistency()
    return int(rows["xyz"].shape[0])
