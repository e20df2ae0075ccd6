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

from argparse import ArgumentParser, Namespace
import os
import sys

import torch
import yaml

CONFIG_SECTIONS = ("model", "optimization", "pipeline")


class GroupParams:
    pass


class ParamGroup:
    def __init__(self, parser: ArgumentParser, name : str, fill_none = False):
        group = parser.add_argument_group(name)
        for key, value in vars(self).items():
            shorthand = False
            if key.startswith("_"):
                shorthand = True
                key = key[1:]
            t = type(value)
            value = value if not fill_none else None
            if shorthand:
                if t == bool:
                    group.add_argument("--" + key, ("-" + key[0:1]), default=value, action="store_true")
                else:
                    group.add_argument("--" + key, ("-" + key[0:1]), default=value, type=t)
            else:
                if t == bool:
                    group.add_argument("--" + key, default=value, action="store_true")
                else:
                    group.add_argument("--" + key, default=value, type=t)

    def keys(self):
        return [key[1:] if key.startswith("_") else key for key in vars(self)]

    def extract(self, args):
        group = GroupParams()
        for arg in vars(args).items():
            if arg[0] in vars(self) or ("_" + arg[0]) in vars(self):
                setattr(group, arg[0], arg[1])
        return group


class ModelParams(ParamGroup):
    def __init__(self, parser, sentinel=False):
        self.sh_degree = 3
        self._source_path = ""
        self._model_path = ""
        self._resolution = -1
        self._white_background = False
        self.data_device = "cuda" if torch.cuda.is_available() else "cpu"
        self.eval = False
        # Random initialisation when the scene ships no point cloud
        self.init_points = 100_000
        self.init_extent = 1.5
        super().__init__(parser, "Loading Parameters", sentinel)

    def extract(self, args):
        g = super().extract(args)
        g.source_path = os.path.abspath(g.source_path)
        return g


class PipelineParams(ParamGroup):
    def __init__(self, parser):
        # Pixels composited per chunk by the reference rasterizer
        self.pixel_chunk = 4096
        super().__init__(parser, "Pipeline Parameters")


class OptimizationParams(ParamGroup):
    def __init__(self, parser):
        self.iterations = 30_000
        self.batch_size = 1
        self.seed = 42
        # position lr, decayed over schedule_steps and scaled by the scene extent
        self.position_lr_init = 0.00016
        self.position_lr_final = 0.0000016
        self.position_lr_delay_mult = 0.01
        self.schedule_steps = 5_000
        # constant lrs
        self.feature_lr = 0.0025
        self.opacity_lr = 0.05
        self.scaling_lr = 0.005
        self.rotation_lr = 0.001
        self.sh_increase_every = 1000

        # loss
        self.ssim_weight = 0.0
        self.pixel_loss = "l1"
        self.huber_delta = 0.05
        self.random_bck_color = False

        # Density control
        self.warmup_steps = 500
        self.refine_every = 100
        self.reset_alpha_every = 30     # in refinement cycles
        self.cull_alpha_thresh = 0.1
        self.cull_scale_thresh = 0.5
        self.cull_screen_size = 0.15    # fraction of the image size, 0 disables
        self.densify_grad_thresh = 0.0001
        self.densify_size_thresh = 0.01
        self.min_densify_count = 1

        self.visualize_every = 100
        super().__init__(parser, "Optimization Parameters")


class ConfigReader:
    """YAML file with ``model`` / ``optimization`` / ``pipeline`` sections of parameter defaults."""

    def __init__(self, config_file: str):
        self.config_file_path = config_file
        with open(config_file, 'r') as file:
            self.config = yaml.safe_load(file) or {}
        unknown = set(self.config) - set(CONFIG_SECTIONS)
        if unknown:
            raise ValueError(f"Unknown sections in {config_file}: {sorted(unknown)}; expected {CONFIG_SECTIONS}")

    def defaults(self):
        flat = {}
        for section in CONFIG_SECTIONS:
            flat.update(self.config.get(section) or {})
        return flat


def parse_args_with_config(parser : ArgumentParser, argv=None):
    """
    Parse ``argv`` where ``--config file.yaml`` replaces parser defaults.
    Flags given on the command line still win over the file.
    """
    parser.add_argument("--config", type=str, default=None)
    pre_args, _ = parser.parse_known_args(argv)
    if pre_args.config is not None:
        reader = ConfigReader(pre_args.config)
        overrides = reader.defaults()
        known = {action.dest for action in parser._actions}
        unknown = set(overrides) - known
        if unknown:
            raise ValueError(f"Unknown options in {pre_args.config}: {sorted(unknown)}")
        parser.set_defaults(**overrides)
    return parser.parse_args(argv)


def save_config(model_path, model_args, opt_args, pipe_args):
    config = {
        "model": dict(vars(model_args)),
        "optimization": dict(vars(opt_args)),
        "pipeline": dict(vars(pipe_args)),
    }
    with open(os.path.join(model_path, "config.yaml"), 'w') as f:
        yaml.safe_dump(config, f, default_flow_style=False)


def get_combined_args(parser : ArgumentParser):
    cmdlne_string = sys.argv[1:]
    cfgfile_string = "Namespace()"
    # Parse defaults separately so we can detect which CLI flags were
    # explicitly provided (vs. defaults).
    default_args = parser.parse_args([])
    args_cmdline = parser.parse_args(cmdlne_string)

    try:
        cfgfilepath = os.path.join(args_cmdline.model_path, "cfg_args")
        print("Looking for config file in", cfgfilepath)
        with open(cfgfilepath) as cfg_file:
            print("Config file found: {}".format(cfgfilepath))
            cfgfile_string = cfg_file.read()
    except (TypeError, FileNotFoundError):
        print("Config file not found at")
    args_cfgfile = eval(cfgfile_string)

    merged_dict = vars(args_cfgfile).copy()
    for k, v in vars(args_cmdline).items():
        # Only override values that were explicitly set on the command line
        if v != getattr(default_args, k):
            merged_dict[k] = v

    for k, v in vars(default_args).items():
        if k not in merged_dict:
            merged_dict[k] = v

    return Namespace(**merged_dict)
