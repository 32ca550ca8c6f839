"""
Pixel Canvas - paid placements on a shared 1000x1000 canvas.
"""
__version__ = "2.0.0"
