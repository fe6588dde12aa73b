"""
ModelSerializerクラスのunit test

複合条件カバレッジ: 主要パスを網羅
テストパターン: Given/When/Then方式
"""

import sys
from pathlib import Path

# lineage_flow.pyをインポートできるようにパスを追加
sys.path.insert(0, str(Path(__file__).parent.parent))

from lineage_flow import (
    ModelSerializer, FlowBuilder, SchemaModel, LineageGraph, TableNode, TableField,
    Calculation, FlowEdge, FieldPointer, EdgeKind, TableType
)


SALES_MODEL = {
    "entities": {
        "BASE_Lines": {"fields": {"qty": {}, "price": {}, "order_id": {}}},
        "CTE_LineTotals": {
            "alias": "lt",
            "fields": {
                "order_id": {"ref": ["BASE_Lines.order_id"]},
                "amount": {"calculation": {"expression": "qty*price", "ref": ["BASE_Lines.qty", "BASE_Lines.price"]}},
            }
        },
        "VIEW_Report": {
            "fields": {
                "order_id": {"ref": ["CTE_LineTotals.order_id"]},
                "amount": {"ref": ["CTE_LineTotals.amount"]},
                "note": {},
            }
        },
    }
}


def build(data):
    return FlowBuilder(SchemaModel.from_dict(data)).build()


def edge_triples(graph):
    return {(e.kind, e.source_handle, e.target_handle) for e in graph.edges}


def field_sets(graph):
    return {n.id: set(n.field_names()) for n in graph.nodes}


class TestModelSerializer:
    """ModelSerializerクラスのテスト"""

    # serializeメソッドのテスト

    def test_serialize_インポートしたモデルの場合_元の辞書が再現されること(self):
        # Given: 正規形のモデルをインポート
        graph = build(SALES_MODEL)

        # When: エクスポート
        result = ModelSerializer(graph).serialize().to_dict()

        # Then: 同じ辞書になる
        assert result == SALES_MODEL

    def test_serialize_往復した場合_ノードとフィールドとエッジが等価であること(self):
        # Given: インポートしたグラフ
        graph = build(SALES_MODEL)

        # When: エクスポートして再インポート
        exported = ModelSerializer(graph).serialize()
        reimported = FlowBuilder(exported).build()

        # Then: ノードID集合、フィールド集合、エッジの三つ組集合が一致する
        assert set(reimported.node_ids()) == set(graph.node_ids())
        assert field_sets(reimported) == field_sets(graph)
        assert edge_triples(reimported) == edge_triples(graph)

    def test_serialize_プレフィックスなしのモデルの場合_修飾名で出力されること(self):
        # Given: プレフィックスなしのエンティティと表示名参照
        graph = build({"entities": {
            "Orders": {"fields": {"id": {}}},
            "Report": {"fields": {"order_id": {"ref": ["Orders.id"]}}},
        }})

        # When
        result = ModelSerializer(graph).serialize().to_dict()

        # Then: BASE_ プレフィックス付きで出力される
        assert result == {"entities": {
            "BASE_Orders": {"fields": {"id": {}}},
            "BASE_Report": {"fields": {"order_id": {"ref": ["BASE_Orders.id"]}}},
        }}

    def test_serialize_保存済みの参照が表示名の場合_修飾名に正規化されること(self):
        # Given: 表示名で参照を保持するグラフ
        graph = LineageGraph(nodes=(
            TableNode("CTE_A", "A", TableType.CTE, fields=(TableField("x"),)),
            TableNode("BASE_B", "B", fields=(TableField("y", refs=("A.x",)),)),
        ))

        # When
        model = ModelSerializer(graph).serialize()

        # Then: CTE_A に解決される
        assert model.find_by_name("BASE_B").find_field("y").refs == ("CTE_A.x",)

    def test_serialize_計算オブジェクトなしで計算エッジがある場合_空の式で出力されること(self):
        # Given: 計算エッジだけがあるフィールド
        graph = LineageGraph(
            nodes=(
                TableNode("BASE_A", "A", fields=(TableField("x"),)),
                TableNode("BASE_B", "B", fields=(TableField("y"),)),
            ),
            edges=(FlowEdge(EdgeKind.CALCULATION, FieldPointer("BASE_A", "x"), FieldPointer("BASE_B", "y")),)
        )

        # When
        result = ModelSerializer(graph).serialize().to_dict()

        # Then: 式は空、参照はエッジから
        assert result["entities"]["BASE_B"]["fields"]["y"] == {
            "calculation": {"expression": "", "ref": ["BASE_A.x"]}
        }

    def test_serialize_保存済み参照とエッジ由来の参照が和集合になること(self):
        # Given: 保存済み参照と別のエッジを持つフィールド
        graph = LineageGraph(
            nodes=(
                TableNode("BASE_A", "A", fields=(TableField("x"), TableField("z"))),
                TableNode("BASE_B", "B", fields=(TableField("y", refs=("BASE_A.x",)),)),
            ),
            edges=(
                FlowEdge(EdgeKind.NORMAL, FieldPointer("BASE_A", "x"), FieldPointer("BASE_B", "y")),
                FlowEdge(EdgeKind.NORMAL, FieldPointer("BASE_A", "z"), FieldPointer("BASE_B", "y")),
            )
        )

        # When
        model = ModelSerializer(graph).serialize()

        # Then: 重複なしで両方含まれる
        assert model.find_by_name("BASE_B").find_field("y").refs == ("BASE_A.x", "BASE_A.z")

    def test_serialize_計算式だけを持つフィールドの場合_空の参照で出力されること(self):
        # Given: 参照のない計算
        graph = LineageGraph(nodes=(
            TableNode("BASE_A", "A", fields=(TableField("x", calculation=Calculation("1 + 1")),)),
        ))

        # When
        result = ModelSerializer(graph).serialize().to_dict()

        # Then
        assert result["entities"]["BASE_A"]["fields"]["x"] == {
            "calculation": {"expression": "1 + 1", "ref": []}
        }

    def test_serialize_同じグラフからは常に同じ結果になること(self):
        # Given
        graph = build(SALES_MODEL)

        # When/Then: 決定的
        assert ModelSerializer(graph).serialize() == ModelSerializer(graph).serialize()

    def test_serialize_不正な参照は元の文字列のまま出力されること(self):
        # Given: 区切り文字のない参照
        graph = build({"entities": {"BASE_A": {"fields": {"x": {"ref": ["oops"]}}}}})

        # When
        result = ModelSerializer(graph).serialize().to_dict()

        # Then
        assert result["entities"]["BASE_A"]["fields"]["x"] == {"ref": ["oops"]}
