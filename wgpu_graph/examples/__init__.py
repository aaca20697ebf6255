"""Small end-to-end training scripts for wgpu_graph."""
