import argparse
import logging
import time
from dataclasses import dataclass
from typing import Optional, Tuple

import numpy as np
import cv2
from sklearn.cluster import KMeans

from color_gmm import ColorGMM, COMPONENTS_COUNT
import graph_calcs
from graph_calcs import GC_BGD, GC_FGD, GC_PR_BGD, GC_PR_FGD

logger = logging.getLogger(__name__)


@dataclass
class GrabCutParams:
    n_components: int = COMPONENTS_COUNT
    n_iter: int = 10
    energy_threshold: float = 1e-3
    gamma: float = 50.0
    random_state: int = 0


def init_mask(shape, rect):
    h, w = shape[:2]
    x, y, rect_w, rect_h = rect
    if x < 0 or y < 0 or rect_w <= 0 or rect_h <= 0 or x + rect_w > w or y + rect_h > h:
        raise ValueError(f"rect {rect} does not fit in an image of size {w}x{h}")

    mask = np.full((h, w), GC_BGD, dtype=np.uint8)
    mask[y:y + rect_h, x:x + rect_w] = GC_PR_FGD
    return mask


def split_pixels(img, mask):
    h, w, c = img.shape
    img_flat = img.reshape((h * w, c)).astype(np.float64)
    mask_flat = mask.reshape(h * w)

    bg_pixels = img_flat[(mask_flat == GC_BGD) | (mask_flat == GC_PR_BGD)]
    fg_pixels = img_flat[(mask_flat == GC_FGD) | (mask_flat == GC_PR_FGD)]
    return bg_pixels, fg_pixels


def fit_gmm(gmm: ColorGMM, pixels, labels):
    gmm.begin_pass()
    gmm.add_samples(labels, pixels)
    gmm.end_pass()
    return gmm


def initialize_GMMs(img, mask, params: GrabCutParams):
    bg_pixels, fg_pixels = split_pixels(img, mask)
    logger.info("Initialize GMMs: %d background pixels, %d foreground pixels", len(bg_pixels), len(fg_pixels))

    if min(len(bg_pixels), len(fg_pixels)) < params.n_components:
        raise ValueError(f"need at least {params.n_components} pixels per side, "
                         f"got {len(bg_pixels)} background and {len(fg_pixels)} foreground")

    gmms = []
    for pixels in (bg_pixels, fg_pixels):
        kmeans = KMeans(n_clusters=params.n_components, n_init=10, random_state=params.random_state).fit(pixels)
        gmms.append(fit_gmm(ColorGMM(n_components=params.n_components), pixels, kmeans.labels_))

    bgGMM, fgGMM = gmms
    return bgGMM, fgGMM


def update_GMMs(img, mask, bgGMM: ColorGMM, fgGMM: ColorGMM):
    bg_pixels, fg_pixels = split_pixels(img, mask)

    # A side that lost every pixel keeps its previous model.
    for gmm, pixels in ((bgGMM, bg_pixels), (fgGMM, fg_pixels)):
        if len(pixels) == 0:
            logger.warning("No pixels left to refit a GMM, keeping the previous model")
            continue
        fit_gmm(gmm, pixels, gmm.classify_many(pixels))

    logger.debug("background weights: %s", bgGMM.weights)
    logger.debug("foreground weights: %s", fgGMM.weights)
    return bgGMM, fgGMM


def calculate_mincut(img, mask, bgGMM, fgGMM, graph, hard_weight=None):
    h, w = mask.shape[:2]
    n_nodes = h * w + 2
    source_node = n_nodes - 2  # Back. T-link
    sink_node = n_nodes - 1  # Fore. T-link

    graph2 = graph_calcs.add_t_links(graph, img, mask, bgGMM, fgGMM, hard_weight)
    cut = graph2.st_mincut(source_node, sink_node, capacity='weight')

    back_part, fore_part = cut.partition
    if sink_node in back_part:
        back_part, fore_part = fore_part, back_part

    back_cut = [v for v in back_part if v != source_node]
    fore_cut = [v for v in fore_part if v != sink_node]

    return (fore_cut, back_cut), cut.value


def update_mask(mincut_sets, mask):
    h, w = mask.shape
    flat_mask = mask.reshape(h * w).copy()
    soft = (flat_mask == GC_PR_BGD) | (flat_mask == GC_PR_FGD)

    fore_cut, back_cut = mincut_sets
    fore = np.zeros(h * w, dtype=bool)
    fore[np.asarray(fore_cut, dtype=np.int64)] = True

    flat_mask[soft & fore] = GC_PR_FGD
    flat_mask[soft & ~fore] = GC_PR_BGD
    logger.debug("Updated mask: %d foreground, %d background pixels", len(fore_cut), len(back_cut))

    return flat_mask.reshape((h, w))


def check_convergence(energy, prev_energy, threshold):
    if prev_energy is None:
        return False
    return abs(prev_energy - energy) <= threshold


def grabcut(img, rect, params: Optional[GrabCutParams] = None) -> Tuple[np.ndarray, ColorGMM, ColorGMM]:
    if params is None:
        params = GrabCutParams()

    img = img.astype(np.float64)
    mask = init_mask(img.shape, rect)
    bgGMM, fgGMM = initialize_GMMs(img, mask, params)

    beta = graph_calcs.calculate_beta(img)
    graph = graph_calcs.calculate_graph(img, beta, params.gamma)
    hard_weight = graph_calcs.calculate_hard_weight(graph)
    logger.info("beta=%g, hard t-link weight=%g", beta, hard_weight)

    prev_energy = None
    for i in range(params.n_iter):
        start_time = time.time()
        bgGMM, fgGMM = update_GMMs(img, mask, bgGMM, fgGMM)

        mincut_sets, energy = calculate_mincut(img, mask, bgGMM, fgGMM, graph, hard_weight)
        mask = update_mask(mincut_sets, mask)

        logger.info("Iteration %d: energy=%.4f (%.2fs)", i, energy, time.time() - start_time)
        if check_convergence(energy, prev_energy, params.energy_threshold):
            break
        prev_energy = energy

    return mask, bgGMM, fgGMM


def cal_metric(predicted_mask, gt_mask):
    accuracy = np.count_nonzero(predicted_mask == gt_mask) / gt_mask.size

    intersection = np.logical_and(predicted_mask, gt_mask).sum()
    union = np.logical_or(predicted_mask, gt_mask).sum()
    jaccard = intersection / union if union else 1.0

    return accuracy, jaccard


def binary_mask(mask):
    return ((mask == GC_FGD) | (mask == GC_PR_FGD)).astype(np.uint8)


def parse(argv=None):
    parser = argparse.ArgumentParser(description='GrabCut segmentation with per-side color GMMs')
    parser.add_argument('--input_img_path', type=str, required=True, help='image to segment')
    parser.add_argument('--rect', type=str, required=True, help='initial foreground rectangle x,y,w,h')
    parser.add_argument('--n_iter', type=int, default=GrabCutParams.n_iter, help='maximum number of iterations')
    parser.add_argument('--gt_path', type=str, default='', help='ground truth mask, enables the metrics')
    parser.add_argument('--output_path', type=str, default='', help='where to write the binary mask')
    parser.add_argument('--show', action='store_true', help='display the result')
    parser.add_argument('--verbose', action='store_true', help='debug logging')
    return parser.parse_args(argv)


def main(argv=None):
    args = parse(argv)
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO,
                        format='%(asctime)s %(name)s %(levelname)s %(message)s')

    img = cv2.imread(args.input_img_path)
    if img is None:
        raise SystemExit(f"could not read image {args.input_img_path}")
    rect = tuple(map(int, args.rect.split(',')))

    start_time = time.time()
    mask, bgGMM, fgGMM = grabcut(img, rect, GrabCutParams(n_iter=args.n_iter))
    mask = binary_mask(mask)
    logger.info("total time: %.2fs", time.time() - start_time)

    if args.gt_path:
        gt_mask = cv2.imread(args.gt_path, cv2.IMREAD_GRAYSCALE)
        gt_mask = cv2.threshold(gt_mask, 0, 1, cv2.THRESH_BINARY)[1]
        acc, jac = cal_metric(mask, gt_mask)
        logger.info("Accuracy=%.4f, Jaccard=%.4f", acc, jac)

    if args.output_path:
        cv2.imwrite(args.output_path, 255 * mask)

    if args.show:
        img_cut = img * (mask[:, :, np.newaxis])
        cv2.imshow('Original Image', img)
        cv2.imshow('GrabCut Mask', 255 * mask)
        cv2.imshow('GrabCut Result', img_cut)
        cv2.waitKey(0)
        cv2.destroyAllWindows()


if __name__ == '__main__':
    main()
