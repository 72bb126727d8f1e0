import numpy as np
import igraph as ig

from color_gmm import ColorGMM

GC_BGD = 0  # Hard bg pixel
GC_FGD = 1  # Hard fg pixel
GC_PR_BGD = 2  # Soft bg pixel
GC_PR_FGD = 3  # Soft fg pixel

# Keeps -log(density) finite for colors no component explains
MIN_DENSITY = np.finfo(np.float64).tiny


def calculate_beta(img):
    img = img.astype(np.float64)

    diag_down = np.sum((img[1:, 1:] - img[:-1, :-1]) ** 2, axis=2)
    diag_up = np.sum((img[:-1, 1:] - img[1:, :-1]) ** 2, axis=2)
    down = np.sum(np.diff(img, axis=0) ** 2, axis=2)
    right = np.sum(np.diff(img, axis=1) ** 2, axis=2)

    sum_total = diag_down.sum() + diag_up.sum() + down.sum() + right.sum()
    cnt = diag_down.size + diag_up.size + down.size + right.size

    if cnt == 0 or sum_total == 0:
        # flat image, every n-link gets the full gamma weight
        return 0.0

    return 1 / (2 * sum_total / cnt)


def calculate_nlink_weight(v1, v2, beta, distance, gamma=50.0):
    diff = v1 - v2
    return (gamma / distance) * np.exp(-beta * np.dot(diff, diff))


def calculate_graph(img, beta, gamma=50.0):
    """
    Undirected 8-connected pixel graph with n-link weights.

    Vertex i * w + j is pixel (i, j); the last two vertices are the background
    (source) and foreground (sink) terminals, linked later by add_t_links.
    """
    img = img.astype(np.float64)
    h, w = img.shape[:2]
    n_nodes = h * w + 2

    graph = ig.Graph(n_nodes, directed=False)
    edge_list = []
    weight_list = []
    for i in range(h):
        for j in range(w):
            pixel_index = i * w + j
            if j + 1 < w:  # right
                edge_list.append((pixel_index, pixel_index + 1))
                weight_list.append(calculate_nlink_weight(img[i, j], img[i, j + 1], beta, 1, gamma))

            if i + 1 < h:  # down
                edge_list.append((pixel_index, pixel_index + w))
                weight_list.append(calculate_nlink_weight(img[i, j], img[i + 1, j], beta, 1, gamma))

            if i + 1 < h and j - 1 >= 0:  # down left
                edge_list.append((pixel_index, pixel_index + w - 1))
                weight_list.append(calculate_nlink_weight(img[i, j], img[i + 1, j - 1], beta, np.sqrt(2), gamma))

            if i + 1 < h and j + 1 < w:  # down right
                edge_list.append((pixel_index, pixel_index + w + 1))
                weight_list.append(calculate_nlink_weight(img[i, j], img[i + 1, j + 1], beta, np.sqrt(2), gamma))

    graph.add_edges(edge_list)
    graph.es['weight'] = weight_list
    return graph


def calculate_hard_weight(graph):
    # larger than any cut through a single pixel's n-links
    return 1.0 + max(graph.strength(weights='weight'), default=0.0)


def calculate_t_weights(gmm: ColorGMM, pixels):
    """Negative log-likelihood of each pixel under the mixture."""
    return -np.log(np.maximum(gmm.joint_densities(pixels), MIN_DENSITY))


def add_t_links(graph: ig.Graph, img, mask, bgGMM: ColorGMM, fgGMM: ColorGMM, hard_weight=None):
    h, w, c = img.shape
    n_pixels = h * w
    mask_flat = mask.reshape(n_pixels)
    img_flat = img.reshape((n_pixels, c)).astype(np.float64)

    n_nodes = n_pixels + 2
    source_node = n_nodes - 2  # Back. T-link
    sink_node = n_nodes - 1  # Fore. T-link

    if hard_weight is None:
        hard_weight = calculate_hard_weight(graph)

    pr_indexes = np.where((mask_flat == GC_PR_BGD) | (mask_flat == GC_PR_FGD))[0]
    bgd_indexes = np.where(mask_flat == GC_BGD)[0]
    fgd_indexes = np.where(mask_flat == GC_FGD)[0]

    pr_pixels = img_flat[pr_indexes]
    fg_cost = calculate_t_weights(fgGMM, pr_pixels)
    bg_cost = calculate_t_weights(bgGMM, pr_pixels)
    # unnormalized densities can exceed 1; the same offset on both t-links
    # of a pixel does not move the minimum cut
    offset = np.minimum(fg_cost, bg_cost)

    edge_list = []
    weight_list = []

    # a pixel cut onto the foreground side pays its source edge, and vice versa
    edge_list.extend((source_node, int(p)) for p in pr_indexes)
    weight_list.extend(fg_cost - offset)

    edge_list.extend((sink_node, int(p)) for p in pr_indexes)
    weight_list.extend(bg_cost - offset)

    edge_list.extend((source_node, int(p)) for p in bgd_indexes)
    weight_list.extend([hard_weight] * bgd_indexes.size)

    edge_list.extend((sink_node, int(p)) for p in fgd_indexes)
    weight_list.extend([hard_weight] * fgd_indexes.size)

    start_index = graph.ecount()
    graph2 = graph.copy()
    graph2.add_edges(edge_list)
    graph2.es[start_index:]['weight'] = [float(x) for x in weight_list]

    return graph2
