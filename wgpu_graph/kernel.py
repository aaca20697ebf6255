"""
Compiled compute dispatches.

A Kernel owns a shader module, an explicit bind-group layout (read-only
storage for inputs, read-write storage for outputs), a compute pipeline and
a bind group. Input buffers are borrowed from the graph's registry; output
buffers are created and owned by the kernel.
"""

import math
import logging
from typing import Dict, List, Mapping

import wgpu

from wgpu_graph.config import DUMP_SHADERS, WORKGROUP_SIZE
from wgpu_graph.errors import BindingResolutionError

logger = logging.getLogger(__name__)

BUFFER_USAGE = wgpu.BufferUsage.STORAGE | wgpu.BufferUsage.COPY_DST | wgpu.BufferUsage.COPY_SRC


def create_storage_buffer(device, size: int, data=None):
    """Storage buffer of ``size`` f32 elements, optionally initialized."""
    if data is not None:
        return device.create_buffer_with_data(data=data, usage=BUFFER_USAGE)
    return device.create_buffer(size=max(size, 1) * 4, usage=BUFFER_USAGE)


class Kernel:
    """One compute dispatch with its pipeline and bindings."""

    def __init__(self, device, name: str, source: str, inputs: List[str],
                 outputs: Mapping[str, int], threads: int, buffers: Mapping):
        """
        Args:
            device: wgpu device
            name: Label for logging and debugging
            source: Complete WGSL source
            inputs: Input buffer names in binding order
            outputs: Output buffer name -> element count, in binding order
            threads: Number of invocations to cover
            buffers: Registry resolving input names to existing buffers
        """
        self.device = device
        self.name = name
        self.source = source
        self.threads = threads

        self.inputs: Dict[str, wgpu.GPUBuffer] = {}
        for input_name in inputs:
            if input_name not in buffers:
                raise BindingResolutionError(input_name, f"kernel {name}")
            self.inputs[input_name] = buffers[input_name]

        self.outputs: Dict[str, wgpu.GPUBuffer] = {}
        for output_name, size in outputs.items():
            self.outputs[output_name] = create_storage_buffer(device, size)

        if DUMP_SHADERS:
            logger.info("Kernel %s:\n%s", name, source)
        else:
            logger.debug("Kernel %s: %d inputs, %d outputs, %d threads",
                         name, len(self.inputs), len(self.outputs), threads)

        shader_module = device.create_shader_module(code=source)

        # Build bind group layout: inputs first, then outputs
        entries = []
        resources = []
        bound = list(self.inputs.values()) + list(self.outputs.values())
        for i, buf in enumerate(bound):
            access = "read-only-storage" if i < len(self.inputs) else "storage"
            entries.append({
                "binding": i,
                "visibility": wgpu.ShaderStage.COMPUTE,
                "buffer": {"type": access, "has_dynamic_offset": False},
            })
            resources.append({
                "binding": i,
                "resource": {"buffer": buf, "offset": 0, "size": buf.size},
            })

        self.bind_group_layout = device.create_bind_group_layout(entries=entries)
        pipeline_layout = device.create_pipeline_layout(
            bind_group_layouts=[self.bind_group_layout]
        )
        self.pipeline = device.create_compute_pipeline(
            layout=pipeline_layout,
            compute={"module": shader_module, "entry_point": "main"},
        )
        self.bind_group = device.create_bind_group(
            layout=self.bind_group_layout, entries=resources,
        )

    @property
    def workgroups(self) -> int:
        return math.ceil(self.threads / WORKGROUP_SIZE)

    def __repr__(self):
        return (f"Kernel({self.name}, inputs={list(self.inputs)}, "
                f"outputs={list(self.outputs)}, workgroups={self.workgroups})")

    def run(self, command_encoder):
        """Record this kernel's compute pass into ``command_encoder``."""
        compute_pass = command_encoder.begin_compute_pass()
        compute_pass.set_pipeline(self.pipeline)
        compute_pass.set_bind_group(0, self.bind_group)
        compute_pass.dispatch_workgroups(self.workgroups)
        compute_pass.end()

    def destroy(self):
        """Release the output buffers this kernel owns."""
        for buf in self.outputs.values():
            buf.destroy()
        self.outputs = {}
