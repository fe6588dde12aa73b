"""
LineageTracerクラスのunit test

複合条件カバレッジ: 100%
テストパターン: Given/When/Then方式
"""

import sys
from pathlib import Path

# lineage_flow.pyをインポートできるようにパスを追加
sys.path.insert(0, str(Path(__file__).parent.parent))

from lineage_flow import (
    LineageTracer, LineageDirection, FlowBuilder, SchemaModel, FlowEdge, FieldPointer, EdgeKind
)


def build(data):
    return FlowBuilder(SchemaModel.from_dict(data)).build()


CHAIN_MODEL = {
    "entities": {
        "BASE_A": {"fields": {"x": {}}},
        "CTE_B": {"fields": {"y": {"ref": ["BASE_A.x"]}}},
        "VIEW_C": {"fields": {"z": {"calculation": {"expression": "y * 2", "ref": ["CTE_B.y"]}}, "w": {}}},
    }
}


class TestLineageTracer:
    """LineageTracerクラスのテスト"""

    def test_trace_計算フィールドの上流の場合_すべての計算エッジが返されること(self):
        # Given: Orders.total = Lines.qty * Lines.price
        graph = build({"entities": {
            "BASE_Orders": {"fields": {"id": {}, "total": {"calculation": {
                "expression": "qty*price", "ref": ["BASE_Lines.qty", "BASE_Lines.price"]}}}},
            "BASE_Lines": {"fields": {"qty": {}, "price": {}}},
        }})

        # When
        result = LineageTracer().trace(graph.edges, "BASE_Orders-total")

        # Then
        assert result == frozenset({
            "calc-BASE_Lines.qty->BASE_Orders.total",
            "calc-BASE_Lines.price->BASE_Orders.total",
        })

    def test_trace_多段の依存の場合_推移的にすべて辿られること(self):
        # Given
        graph = build(CHAIN_MODEL)

        # When
        result = LineageTracer(LineageDirection.UPSTREAM).trace(graph.edges, "VIEW_C-z")

        # Then: 通常エッジと計算エッジの両方を辿る
        assert result == frozenset({"calc-CTE_B.y->VIEW_C.z", "ref-BASE_A.x->CTE_B.y"})

    def test_trace_下流方向の場合_影響先のエッジが返されること(self):
        # Given
        graph = build(CHAIN_MODEL)

        # When
        result = LineageTracer(LineageDirection.DOWNSTREAM).trace(graph.edges, "BASE_A-x")

        # Then
        assert result == frozenset({"ref-BASE_A.x->CTE_B.y", "calc-CTE_B.y->VIEW_C.z"})

    def test_trace_上流のないフィールドの場合_空集合が返されること(self):
        # Given
        graph = build(CHAIN_MODEL)

        # When/Then
        assert LineageTracer().trace(graph.edges, "BASE_A-x") == frozenset()
        assert LineageTracer().trace(graph.edges, "VIEW_C-w") == frozenset()

    def test_trace_存在しないハンドルの場合_空集合が返されること(self):
        # Given/When/Then
        assert LineageTracer().trace(build(CHAIN_MODEL).edges, "BASE_Nope-x") == frozenset()

    def test_trace_循環参照の場合_停止して循環のエッジが返されること(self):
        # Given: A.x ← B.y ← A.x
        graph = build({"entities": {
            "BASE_A": {"fields": {"x": {"ref": ["BASE_B.y"]}}},
            "BASE_B": {"fields": {"y": {"ref": ["BASE_A.x"]}}},
        }})

        # When
        result = LineageTracer().trace(graph.edges, "BASE_A-x")

        # Then
        assert result == frozenset({"ref-BASE_B.y->BASE_A.x", "ref-BASE_A.x->BASE_B.y"})

    def test_trace_ひし形の依存の場合_共通の上流は1回だけ辿られること(self):
        # Given: D ← B ← A, D ← C ← A
        graph = build({"entities": {
            "BASE_T": {"fields": {
                "a": {},
                "b": {"ref": ["BASE_T.a"]},
                "c": {"ref": ["BASE_T.a"]},
                "d": {"calculation": {"expression": "b + c", "ref": ["BASE_T.b", "BASE_T.c"]}},
            }},
        }})

        # When
        result = LineageTracer().trace(graph.edges, "BASE_T-d")

        # Then
        assert len(result) == 4

    def test_trace_深い連鎖の場合_再帰せずに辿りきること(self):
        # Given: 5000段の連鎖
        depth = 5000
        edges = [
            FlowEdge(EdgeKind.NORMAL, FieldPointer("BASE_T", f"f{i}"), FieldPointer("BASE_T", f"f{i + 1}"))
            for i in range(depth)
        ]

        # When
        result = LineageTracer().trace(edges, f"BASE_T-f{depth}")

        # Then
        assert len(result) == depth
