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

from utils.errors import PointSetConsistencyError
from utils.general_utils import get_expon_lr_func


class MultiGroupOptimizer:
    """
    Adam over the point set with one named param group per parameter class
    (xyz, f_dc, f_rest, opacity, scaling, rotation), each with its own
    learning-rate schedule.

    Moment estimates are row-aligned with the point set, so whenever the
    point count changes ``reset`` must be called. It drops them and rebuilds
    Adam on the current tensors.
    """

    def __init__(self, gaussians, training_args):
        self.gaussians = gaussians
        self.spatial_lr_scale = gaussians.spatial_lr_scale

        self.schedulers = {
            "xyz": get_expon_lr_func(lr_init=training_args.position_lr_init * self.spatial_lr_scale,
                                     lr_final=training_args.position_lr_final * self.spatial_lr_scale,
                                     lr_delay_mult=training_args.position_lr_delay_mult,
                                     max_steps=training_args.schedule_steps),
            "f_dc": get_expon_lr_func(training_args.feature_lr, training_args.feature_lr),
            "f_rest": get_expon_lr_func(training_args.feature_lr / 20.0, training_args.feature_lr / 20.0),
            "opacity": get_expon_lr_func(training_args.opacity_lr, training_args.opacity_lr),
            "scaling": get_expon_lr_func(training_args.scaling_lr, training_args.scaling_lr),
            "rotation": get_expon_lr_func(training_args.rotation_lr, training_args.rotation_lr),
        }
        self.optimizer = None
        self.reset()

    def reset(self):
        points = self.gaussians.get_points()
        param_groups = [
            {'params': [points[name]], 'lr': self.schedulers[name](0), "name": name}
            for name in self.gaussians.param_names
        ]
        self.optimizer = torch.optim.Adam(param_groups, lr=0.0, eps=1e-15)

    @property
    def param_groups(self):
        return self.optimizer.param_groups

    def update_learning_rate(self, iteration):
        ''' Learning rate scheduling per step '''
        lrs = {}
        for param_group in self.optimizer.param_groups:
            lr = self.schedulers[param_group["name"]](iteration)
            param_group['lr'] = lr
            lrs[param_group["name"]] = lr
        return lrs

    def _check_bound(self):
        points = self.gaussians.get_points()
        for param_group in self.optimizer.param_groups:
            if param_group["params"][0] is not points[param_group["name"]]:
                raise PointSetConsistencyError(
                    f"Optimizer group '{param_group['name']}' is bound to a stale tensor; reset() after restructuring")

    def step(self, iteration):
        """Apply one Adam update with this iteration's learning rates. Returns them per group."""
        self._check_bound()
        lrs = self.update_learning_rate(iteration)
        self.optimizer.step()
        self.optimizer.zero_grad(set_to_none=True)
        return lrs

    def zero_grad(self):
        self.optimizer.zero_grad(set_to_none=True)

    def state_dict(self):
        return self.optimizer.state_dict()

    def load_state_dict(self, state_dict):
        self.optimizer.load_state_dict(state_dict)
