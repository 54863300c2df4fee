from apps.flows.const import NodeType
from apps.flows.flow import DataStoreSchema, DataStoreSchemaField, Flow
from apps.utils.factories.flows import FlowFactory


def start_node(node_id="start"):
    return {"id": node_id, "type": NodeType.START, "data": {"label": "Start"}}


def end_node(node_id="end"):
    return {"id": node_id, "type": NodeType.END, "data": {"label": "End"}}


def agent_node(node_id, agent_id=None):
    return {"id": node_id, "type": NodeType.AGENT, "data": {"agentId": agent_id or node_id}}


def if_node(node_id, conditions=None, logic_operator="AND"):
    return {
        "id": node_id,
        "type": NodeType.IF,
        "data": {
            "ifNodeId": f"if-{node_id}",
            "name": node_id,
            "conditions": conditions or [],
            "logicOperator": logic_operator,
        },
    }


def data_store_node(node_id, fields=None):
    return {
        "id": node_id,
        "type": NodeType.DATA_STORE,
        "data": {"dataStoreNodeId": f"ds-{node_id}", "name": node_id, "dataStoreFields": fields or []},
    }


def _make_edges(nodes) -> list[dict]:
    if len(nodes) <= 1:
        return []

    return [
        {"id": f"{node['id']}->{nodes[i + 1]['id']}", "source": node["id"], "target": nodes[i + 1]["id"]}
        for i, node in enumerate(nodes[:-1])
    ]


def _edges_from_strings(edge_strings: list[str], nodes: list[dict]) -> list[dict]:
    """
    Convert a list of edge strings into a list of edge dictionaries.

    Each edge string should be in the format "source - target" or "source:handle - target".
    """
    node_ids = {node["id"] for node in nodes}
    edges = []
    for edge in edge_strings:
        source, target = edge.split(" - ")
        handle = None
        if ":" in source:
            source, handle = source.split(":")
        if source not in node_ids or target not in node_ids:
            raise ValueError(f"Invalid edge: {edge}")
        edge_id = f"{source}:{handle}->{target}" if handle else f"{source}->{target}"
        edges.append({"id": edge_id, "source": source, "target": target, "sourceHandle": handle})
    return edges


def make_flow(
    nodes: list[dict], edges: list[dict | str] | None = None, schema_fields: list[DataStoreSchemaField] = None, **kwargs
) -> Flow:
    if edges is None:
        edges = _make_edges(nodes)
    if edges and isinstance(edges[0], str):
        edges = _edges_from_strings(edges, nodes)
    return FlowFactory(
        nodes=nodes,
        edges=edges,
        dataStoreSchema=DataStoreSchema(fields=schema_fields or []),
        **kwargs,
    )


def branching_flow(**kwargs) -> Flow:
    """start -> a -> check -(true)-> b -> end, check -(false)-> c -> end"""
    nodes = [start_node(), agent_node("a"), if_node("check"), agent_node("b"), agent_node("c"), end_node()]
    edges = ["start - a", "a - check", "check:true - b", "check:false - c", "b - end", "c - end"]
    return make_flow(nodes, edges, **kwargs)
