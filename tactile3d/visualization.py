import numpy as np
from pathlib import Path
import matplotlib
matplotlib.use("Agg")
import matplotlib.pyplot as plt
from .geometry import HeightMap, NormalMap
from .image_io import encode_normals, save_image

### The purpose of this script is to handle visualization of reconstruction results.
def save_normals_rgb(normal_map: NormalMap, path: str):
    """Map normals to 8-bit RGB for visualization."""
    save_image(encode_normals(normal_map, bits=8), path, convert_bgr=True)

def save_height_plot(height_map: HeightMap, out_path: str, stride: int = 1):
    """
    Create a 3D surface plot from a height map and save it as an image.

    Parameters:
        height_map : HeightMap
                     Elevations and their grid spacing.
        out_path   : str
                     Path to save the output image.
        stride     : int
                     Plot every stride-th row/column of large maps.
    """
    z = height_map.data[::stride, ::stride]
    H, W = z.shape
    step = height_map.resolution * stride
    X, Y = np.meshgrid(height_map.x_offset + np.arange(W) * step,
                       height_map.y_offset + np.arange(H) * step)

    fig = plt.figure(figsize=(8, 6))
    ax = fig.add_subplot(111, projection='3d')
    ax.plot_surface(X, Y, z, rstride=1, cstride=1, cmap='viridis', edgecolor='none')

    unit = height_map.unit.value
    ax.set_xlabel(f'X [{unit}]')
    ax.set_ylabel(f'Y [{unit}]')
    ax.set_zlabel(f'Height [{unit}]')
    ax.view_init(elev=30, azim=120)

    Path(out_path).parent.mkdir(parents=True, exist_ok=True)
    fig.savefig(out_path, bbox_inches='tight')
    plt.close(fig)
