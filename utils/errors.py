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

class SplatTrainingError(RuntimeError):
    """Base class for fatal training failures. Never caught inside the trainer."""


class NonFiniteError(SplatTrainingError):
    pass


class MissingGradientError(SplatTrainingError):
    pass


class EmptyPointSetError(SplatTrainingError):
    """Raised before a prune is applied when it would leave zero points."""


class PointSetConsistencyError(SplatTrainingError):
    """Parallel point arrays disagree in length."""
