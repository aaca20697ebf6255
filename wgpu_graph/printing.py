"""Human-readable dumps of a compiled graph: the operation tree and kernel sources."""

from typing import List

from wgpu_graph.node import Node


def print_ast(node: Node) -> str:
    """
    S-expression of the operations under ``node``.

    Leaves print by name, constants by value. Hand-off placeholders are
    transparent, so the tree reads as the user wrote it, e.g.
    ``(output (add (matmul X W) b))``.
    """
    if node.constant:
        return node.variable
    if node.leaf is not None:
        return node.leaf.name
    if node.producer is not None:
        return print_ast(node.producer)
    if not node.dependencies:
        return node.operation
    args = " ".join(print_ast(dep) for dep in node.dependencies)
    return f"({node.operation} {args})"


def _banner(title: str) -> str:
    return f"// {'=' * 72}\n// {title}\n// {'=' * 72}"


def format_kernels(graph) -> str:
    """
    Annotated forward and backward WGSL of a compiled graph.

    Args:
        graph: A compiled TensorGraph, or a GraphPlan

    Returns:
        All sources in dispatch order, each under a banner naming its
        context, op class and thread count.
    """
    plan = getattr(graph, "plan", graph)
    if plan is None:
        return ""
    sections: List[str] = []
    for i, (context, source) in enumerate(zip(plan.contexts, plan.sources)):
        sections.append(_banner(
            f"forward {i}: context {context.id} ({context.op_class.value}, "
            f"{context.size} threads, depth {context.depth})"))
        sections.append(source)
    for bw, source in zip(plan.backward, plan.backward_sources):
        if not bw.outputs:
            continue
        sections.append(_banner(
            f"backward: context {bw.context.id} ({bw.threads} threads, "
            f"{len(bw.outputs)} gradient buffers)"))
        sections.append(source)
    return "\n".join(sections)
