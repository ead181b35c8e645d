from __future__ import annotations

"""
Graph signature sources for beam-search subgraphs.

A GraphSignature is the ordered, named and typed view of a graph's inputs and
outputs plus the outer-scope (implicit) names it consumes. It can be read from
an ONNX GraphProto, from a model file holding a com.microsoft BeamSearch node,
or from a live onnxruntime session.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable, List, Optional, Sequence, Tuple, Union

import onnx
from onnx import AttributeProto, GraphProto, ModelProto, TensorProto

Dim = Union[int, str, None]

# onnxruntime NodeArg.type strings -> TensorProto data types
_ORT_TYPE_TO_ONNX = {
    "tensor(float)": TensorProto.FLOAT,
    "tensor(uint8)": TensorProto.UINT8,
    "tensor(int8)": TensorProto.INT8,
    "tensor(uint16)": TensorProto.UINT16,
    "tensor(int16)": TensorProto.INT16,
    "tensor(int32)": TensorProto.INT32,
    "tensor(int64)": TensorProto.INT64,
    "tensor(string)": TensorProto.STRING,
    "tensor(bool)": TensorProto.BOOL,
    "tensor(float16)": TensorProto.FLOAT16,
    "tensor(double)": TensorProto.DOUBLE,
    "tensor(uint32)": TensorProto.UINT32,
    "tensor(uint64)": TensorProto.UINT64,
    "tensor(bfloat16)": TensorProto.BFLOAT16,
}


def elem_type_name(elem_type: int) -> str:
    """Readable name for a TensorProto data type code (e.g. 6 -> 'int32')."""
    try:
        return TensorProto.DataType.Name(int(elem_type)).lower()
    except ValueError:
        return f"unknown({elem_type})"


@dataclass(frozen=True)
class SlotSpec:
    name: str
    elem_type: int
    shape: Optional[Tuple[Dim, ...]] = None


@dataclass(frozen=True)
class GraphSignature:
    inputs: Tuple[SlotSpec, ...]
    outputs: Tuple[SlotSpec, ...]
    implicit_inputs: Tuple[str, ...] = field(default_factory=tuple)

    @property
    def input_names(self) -> List[str]:
        return [s.name for s in self.inputs]

    @property
    def output_names(self) -> List[str]:
        return [s.name for s in self.outputs]


def _shape_of(vi: onnx.ValueInfoProto) -> Optional[Tuple[Dim, ...]]:
    tt = vi.type.tensor_type
    if not tt.HasField("shape"):
        return None
    dims: List[Dim] = []
    for d in tt.shape.dim:
        if d.HasField("dim_value"):
            dims.append(int(d.dim_value))
        elif d.HasField("dim_param"):
            dims.append(str(d.dim_param))
        else:
            dims.append(None)
    return tuple(dims)


def _slot_from_value_info(vi: onnx.ValueInfoProto) -> SlotSpec:
    return SlotSpec(name=vi.name, elem_type=int(vi.type.tensor_type.elem_type), shape=_shape_of(vi))


def _nested_graphs(node: onnx.NodeProto) -> Iterable[GraphProto]:
    for attr in node.attribute:
        if attr.type == AttributeProto.GRAPH:
            yield attr.g
        elif attr.type == AttributeProto.GRAPHS:
            yield from attr.graphs


def find_implicit_inputs(graph: GraphProto) -> List[str]:
    """Return names consumed by the graph but defined in an outer scope.

    Nested subgraphs (If/Loop/Scan bodies) are walked as well; a name they
    consume that the enclosing graph does not define is implicit too.
    Order is first use, without duplicates: nodes in graph order, a node's own
    inputs before its subgraphs, and subgraphs in the order their attributes
    are stored on the node. onnx.helper.make_node stores keyword attributes
    sorted by name, so an If built with it yields else_branch before
    then_branch.
    """
    defined = {i.name for i in graph.input}
    defined.update(t.name for t in graph.initializer)
    defined.update(t.values.name for t in graph.sparse_initializer)
    for node in graph.node:
        defined.update(o for o in node.output if o)

    found: List[str] = []
    seen = set()

    def _add(name: str) -> None:
        if name and name not in defined and name not in seen:
            seen.add(name)
            found.append(name)

    for node in graph.node:
        for name in node.input:
            _add(name)
        for sub in _nested_graphs(node):
            for name in find_implicit_inputs(sub):
                _add(name)
    return found


def signature_from_graph(graph: GraphProto) -> GraphSignature:
    # Initializers may also be listed as graph inputs (IR < 4); they are not feeds.
    init_names = {t.name for t in graph.initializer}
    inputs = tuple(_slot_from_value_info(vi) for vi in graph.input if vi.name not in init_names)
    outputs = tuple(_slot_from_value_info(vi) for vi in graph.output)
    return GraphSignature(inputs=inputs, outputs=outputs, implicit_inputs=tuple(find_implicit_inputs(graph)))


def load_encoder_subgraph(model: Union[str, Path, ModelProto], attribute: str = "encoder") -> GraphProto:
    """Return the encoder subgraph held by the first BeamSearch node of a model.

    Models without a BeamSearch node are treated as a standalone encoder graph
    and their main graph is returned.
    """
    m = model if isinstance(model, ModelProto) else onnx.load(str(model))
    for node in m.graph.node:
        if node.op_type != "BeamSearch":
            continue
        for attr in node.attribute:
            if attr.name == attribute and attr.type == AttributeProto.GRAPH:
                return attr.g
        raise ValueError(f"BeamSearch node '{node.name}' has no '{attribute}' graph attribute")
    return m.graph


def signature_from_model(model: Union[str, Path, ModelProto], attribute: str = "encoder") -> GraphSignature:
    return signature_from_graph(load_encoder_subgraph(model, attribute=attribute))


def _slot_from_node_arg(arg: Any) -> SlotSpec:
    type_str = str(getattr(arg, "type", ""))
    elem_type = _ORT_TYPE_TO_ONNX.get(type_str, TensorProto.UNDEFINED)
    shape = getattr(arg, "shape", None)
    dims: Optional[Tuple[Dim, ...]] = None
    if shape is not None:
        dims = tuple(d if isinstance(d, (int, str)) or d is None else str(d) for d in shape)
    return SlotSpec(name=str(arg.name), elem_type=int(elem_type), shape=dims)


def signature_from_session(session: Any, implicit_inputs: Sequence[str] = ()) -> GraphSignature:
    """Build a signature from an onnxruntime InferenceSession (or anything with
    the same get_inputs()/get_outputs() NodeArg API).

    Sessions only expose primary inputs, so implicit input names are supplied
    by the caller.
    """
    inputs = tuple(_slot_from_node_arg(a) for a in session.get_inputs())
    outputs = tuple(_slot_from_node_arg(a) for a in session.get_outputs())
    return GraphSignature(inputs=inputs, outputs=outputs, implicit_inputs=tuple(implicit_inputs))
