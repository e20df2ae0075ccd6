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

import logging
import os
import sys
import time
import uuid
from argparse import ArgumentParser, Namespace

import torch
from tqdm import tqdm

from arguments import ModelParams, PipelineParams, OptimizationParams, parse_args_with_config, save_config
from gaussian_renderer import render
from scene import Scene, GaussianModel
from training.trainer import SplatTrainer
from utils.general_utils import safe_state
from utils.image_utils import psnr
from utils.loss_utils import l1_loss

try:
    from torch.utils.tensorboard import SummaryWriter
    TENSORBOARD_FOUND = True
except ImportError:
    TENSORBOARD_FOUND = False


def training(dataset, opt, pipe, testing_iterations, saving_iterations, checkpoint_iterations, checkpoint):
    first_iter = 0
    tb_writer = prepare_output_and_logger(dataset, opt, pipe)

    gaussians = GaussianModel(dataset.sh_degree, device=dataset.data_device)
    scene = Scene(dataset, gaussians)

    bg_color = [1, 1, 1] if dataset.white_background else [0, 0, 0]
    trainer = SplatTrainer(gaussians, opt, pipe, background=bg_color)
    if checkpoint:
        (trainer_params, first_iter) = torch.load(checkpoint, weights_only=False)
        trainer.restore(trainer_params)

    ema_loss_for_log = 0.0
    progress_bar = tqdm(range(first_iter, opt.iterations), desc="Training progress")
    first_iter += 1
    for iteration in range(first_iter, opt.iterations + 1):
        iter_start = time.perf_counter()

        batch = scene.getTrainBatch(opt.batch_size)
        step_stats = trainer.step(batch)

        elapsed = time.perf_counter() - iter_start

        with torch.no_grad():
            # Progress bar
            ema_loss_for_log = 0.4 * step_stats.loss + 0.6 * ema_loss_for_log
            if iteration % 10 == 0:
                progress_bar.set_postfix({
                    "Num": f"{step_stats.num_points:07d}",
                    "Loss": f"{ema_loss_for_log:.{7}f}",
                })
                progress_bar.update(10)
            if iteration == opt.iterations:
                progress_bar.close()

            if step_stats.refine is not None:
                report = step_stats.refine
                tqdm.write("[ITER {}] Refine: pruned {}, cloned {}, split {}{} -> {} points".format(
                    iteration, report.num_pruned, report.num_cloned, report.num_split,
                    ", opacity reset" if report.opacity_reset else "", report.num_after))

            # Log and save
            training_report(tb_writer, iteration, step_stats, batch, elapsed, opt.visualize_every,
                            testing_iterations, scene, render, (pipe, trainer.background))

            if (iteration in saving_iterations):
                print("\n[ITER {}] Saving Gaussians".format(iteration))
                scene.save(iteration)

            if (iteration in checkpoint_iterations):
                print("\n[ITER {}] Saving Checkpoint".format(iteration))
                torch.save((trainer.capture(), iteration), scene.model_path + "/chkpnt" + str(iteration) + ".pth")

    if tb_writer:
        tb_writer.close()


def prepare_output_and_logger(args, opt, pipe):
    if not args.model_path:
        if os.getenv('OAR_JOB_ID'):
            unique_str = os.getenv('OAR_JOB_ID')
        else:
            unique_str = str(uuid.uuid4())
        args.model_path = os.path.join("./output/", unique_str[0:10])

    # Set up output folder
    print("Output folder: {}".format(args.model_path))
    os.makedirs(args.model_path, exist_ok = True)
    with open(os.path.join(args.model_path, "cfg_args"), 'w') as cfg_log_f:
        cfg_log_f.write(str(Namespace(**vars(args))))
    save_config(args.model_path, args, opt, pipe)

    # Create Tensorboard writer
    tb_writer = None
    if TENSORBOARD_FOUND:
        tb_writer = SummaryWriter(args.model_path)
    else:
        print("Tensorboard not available: not logging progress")
    return tb_writer


def training_report(tb_writer, iteration, step_stats, batch, elapsed, visualize_every, testing_iterations, scene : Scene, renderFunc, renderArgs):
    if tb_writer:
        tb_writer.add_scalar('train_loss_patches/total_loss', step_stats.loss, iteration)
        tb_writer.add_scalar('train_loss_patches/psnr', step_stats.psnr, iteration)
        tb_writer.add_scalar('iter_time', elapsed, iteration)
        tb_writer.add_scalar('total_points', step_stats.num_points, iteration)
        tb_writer.add_scalar('num_visible', sum(aux.num_visible for aux in step_stats.auxes), iteration)
        tb_writer.add_scalar('num_intersects', sum(aux.num_intersects for aux in step_stats.auxes), iteration)
        for name, lr in step_stats.lrs.items():
            tb_writer.add_scalar('lr/' + name, lr, iteration)

        if visualize_every > 0 and iteration % visualize_every == 0:
            tb_writer.add_images("train/render", step_stats.pred_images.clamp(0.0, 1.0), global_step=iteration)
            tb_writer.add_images("train/ground_truth", batch.gt_images, global_step=iteration)
            tb_writer.add_histogram("scene/opacity_histogram", scene.gaussians.get_opacity.detach(), iteration)

    # Report test and samples of training set
    if iteration in testing_iterations:
        validation_configs = ({'name': 'test', 'cameras' : scene.getTestCameras()},
                              {'name': 'train', 'cameras' : [scene.getTrainCameras()[idx % len(scene.getTrainCameras())] for idx in range(5, 30, 5)]})

        for config in validation_configs:
            if config['cameras'] and len(config['cameras']) > 0:
                l1_test = 0.0
                psnr_test = 0.0
                for idx, viewpoint in enumerate(config['cameras']):
                    image = torch.clamp(renderFunc(viewpoint, scene.gaussians, *renderArgs)["render"], 0.0, 1.0)
                    gt_image = torch.clamp(viewpoint.original_image.to(image.device), 0.0, 1.0)
                    if tb_writer and (idx < 5):
                        tb_writer.add_images(config['name'] + "_view_{}/render".format(viewpoint.image_name), image[None], global_step=iteration)
                        if iteration == testing_iterations[0]:
                            tb_writer.add_images(config['name'] + "_view_{}/ground_truth".format(viewpoint.image_name), gt_image[None], global_step=iteration)
                    l1_test += l1_loss(image, gt_image).double()
                    psnr_test += psnr(image[None], gt_image[None]).mean().double()
                psnr_test /= len(config['cameras'])
                l1_test /= len(config['cameras'])
                print("\n[ITER {}] Evaluating {}: L1 {} PSNR {}".format(iteration, config['name'], l1_test, psnr_test))
                if tb_writer:
                    tb_writer.add_scalar(config['name'] + '/loss_viewpoint - l1_loss', l1_test, iteration)
                    tb_writer.add_scalar(config['name'] + '/loss_viewpoint - psnr', psnr_test, iteration)


if __name__ == "__main__":
    # Set up command line argument parser
    parser = ArgumentParser(description="Training script parameters")
    lp = ModelParams(parser)
    op = OptimizationParams(parser)
    pp = PipelineParams(parser)
    parser.add_argument('--detect_anomaly', action='store_true', default=False)
    parser.add_argument("--test_iterations", nargs="+", type=int, default=[7_000, 30_000])
    parser.add_argument("--save_iterations", nargs="+", type=int, default=[7_000, 30_000])
    parser.add_argument("--quiet", action="store_true")
    parser.add_argument("--checkpoint_iterations", nargs="+", type=int, default=[])
    parser.add_argument("--start_checkpoint", type=str, default = None)
    args = parse_args_with_config(parser, sys.argv[1:])
    args.save_iterations.append(args.iterations)

    logging.basicConfig(level=logging.WARNING if args.quiet else logging.INFO,
                        format="%(asctime)s %(name)s %(levelname)s: %(message)s")

    print("Optimizing " + args.model_path)

    # Initialize system state (RNG)
    safe_state(args.quiet, args.seed)

    torch.autograd.set_detect_anomaly(args.detect_anomaly)
    training(lp.extract(args), op.extract(args), pp.extract(args), args.test_iterations, args.save_iterations, args.checkpoint_iterations, args.start_checkpoint)

    # All done
    print("\nTraining complete.")
