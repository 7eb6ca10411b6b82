"""
Influence Graph MCP Server

Exposes the influence engine as an MCP server so MCP-compatible clients
can query and recompute it natively.

Tools exposed:
  Graph:     graph_view, node_detail
  Analytics: analytics
  Scores:    recompute, recompute_status, record_event
  Edges:     create_edge, update_edge, delete_edge
  Cache:     cache_stats
"""

import json

from mcp.server import Server
from mcp.types import Tool, TextContent

from influence_graph.core.errors import InfluenceError
from influence_graph.interface.service import ANALYTICS_KINDS


_TENANT = {"type": "string", "description": "Organization / tenant id"}

TOOLS = [
    # Graph
    Tool(name="graph_view", description="Nodes and edges (with decayed weight) for a tenant",
         inputSchema={"type": "object", "properties": {
             "tenant": _TENANT,
             "include_propagation": {"type": "boolean", "default": False},
             "include_communities": {"type": "boolean", "default": False},
         }, "required": ["tenant"]}),

    Tool(name="node_detail", description="One node's edges and recent score history",
         inputSchema={"type": "object", "properties": {
             "tenant": _TENANT,
             "node_id": {"type": "string"},
         }, "required": ["tenant", "node_id"]}),

    # Analytics
    Tool(name="analytics", description="Influence analytics for a tenant",
         inputSchema={"type": "object", "properties": {
             "tenant": _TENANT,
             "kind": {"type": "string", "enum": list(ANALYTICS_KINDS), "default": "overview"},
             "limit": {"type": "integer", "default": 10},
             "metric": {"type": "string", "enum": ["total", "direct", "propagated", "volatility"],
                        "default": "total"},
         }, "required": ["tenant"]}),

    # Scores
    Tool(name="recompute", description="Recompute influence scores for a tenant",
         inputSchema={"type": "object", "properties": {
             "tenant": _TENANT,
             "apply_decay": {"type": "boolean", "default": True},
             "process_events": {"type": "boolean", "default": True},
         }, "required": ["tenant"]}),

    Tool(name="recompute_status", description="Pending events and last recompute time",
         inputSchema={"type": "object", "properties": {"tenant": _TENANT},
                      "required": ["tenant"]}),

    Tool(name="record_event", description="Queue a one-shot influence adjustment",
         inputSchema={"type": "object", "properties": {
             "tenant": _TENANT,
             "subject_node_id": {"type": "string"},
             "event_type": {"type": "string", "enum": [
                 "PROJECT_SUCCESS", "PROPOSAL_ADOPTED", "MENTORSHIP", "COLLABORATION"]},
             "weight_delta": {"type": "number"},
             "impact_score": {"type": "number", "default": 1.0},
         }, "required": ["tenant", "subject_node_id", "event_type"]}),

    # Edges
    Tool(name="create_edge", description="Create an influence edge",
         inputSchema={"type": "object", "properties": {
             "tenant": _TENANT,
             "source_id": {"type": "string"},
             "target_id": {"type": "string"},
             "weight": {"type": "number", "description": "0 to 100"},
             "context": {"type": "string"},
             "context_type": {"type": "string"},
         }, "required": ["tenant", "source_id", "target_id", "weight"]}),

    Tool(name="update_edge", description="Update an influence edge",
         inputSchema={"type": "object", "properties": {
             "edge_id": {"type": "string"},
             "weight": {"type": "number"},
             "context": {"type": "string"},
             "context_type": {"type": "string"},
             "active": {"type": "boolean"},
         }, "required": ["edge_id"]}),

    Tool(name="delete_edge", description="Delete an influence edge",
         inputSchema={"type": "object", "properties": {"edge_id": {"type": "string"}},
                      "required": ["edge_id"]}),

    # Cache
    Tool(name="cache_stats", description="Result cache hits, misses and size",
         inputSchema={"type": "object", "properties": {}}),
]


def create_mcp_server(get_service):
    """Create an MCP server backed by an InfluenceService.

    get_service is a callable returning the current service (it may not
    exist at import time).
    """
    server = Server("influence-graph")

    @server.list_tools()
    async def list_tools():
        return TOOLS

    @server.call_tool()
    async def call_tool(name: str, arguments: dict) -> list[TextContent]:
        try:
            result = dispatch(name, arguments or {}, get_service())
        except InfluenceError as e:
            result = e.to_dict()
        return [TextContent(type="text", text=json.dumps(result, default=str))]

    return server


def dispatch(name: str, args: dict, service) -> dict:
    """Route tool calls to InfluenceService methods."""
    if name == "graph_view":
        return service.compute_graph_view(args["tenant"],
                                          args.get("include_propagation", False),
                                          args.get("include_communities", False))
    elif name == "node_detail":
        return service.node_detail(args["tenant"], args["node_id"])
    elif name == "analytics":
        return service.compute_analytics(args["tenant"], args.get("kind", "overview"),
                                         args.get("limit", 10), args.get("metric", "total"))
    elif name == "recompute":
        return service.recompute(args["tenant"], args.get("apply_decay", True),
                                 args.get("process_events", True))
    elif name == "recompute_status":
        return service.recompute_status(args["tenant"])
    elif name == "record_event":
        return service.record_event(args["tenant"], args["subject_node_id"],
                                    args["event_type"], args.get("weight_delta"),
                                    args.get("impact_score", 1.0))
    elif name == "create_edge":
        return service.create_edge(args["tenant"], args["source_id"], args["target_id"],
                                   args["weight"], args.get("context"),
                                   args.get("context_type"))
    elif name == "update_edge":
        return service.update_edge(args["edge_id"], args.get("weight"), args.get("context"),
                                   args.get("context_type"), args.get("active"))
    elif name == "delete_edge":
        return service.delete_edge(args["edge_id"])
    elif name == "cache_stats":
        return service.cache_stats()
    else:
        return {"error": f"Unknown tool: {name}"}
