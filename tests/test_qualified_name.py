"""
QualifiedNameクラスのunit test

複合条件カバレッジ: 100%
テストパターン: Given/When/Then方式
"""

import sys
from pathlib import Path

# lineage_flow.pyをインポートできるようにパスを追加
sys.path.insert(0, str(Path(__file__).parent.parent))

import pytest
from lineage_flow import QualifiedName, TableType


class TestQualifiedName:
    """QualifiedNameクラスのテスト"""

    # parseメソッドのテスト

    @pytest.mark.parametrize("name, table_type, display_name", [
        ("BASE_Orders", TableType.BASE, "Orders"),
        ("CTE_Totals", TableType.CTE, "Totals"),
        ("VIEW_Report", TableType.VIEW, "Report"),
    ])
    def test_parse_プレフィックス付きの場合_種別と表示名に分割されること(self, name, table_type, display_name):
        # Given/When: プレフィックス付きの名前をパース
        result = QualifiedName.parse(name)

        # Then: 種別と表示名が取り出される
        assert result.table_type is table_type
        assert result.display_name == display_name

    def test_parse_プレフィックスがない場合_BASEとして扱われること(self):
        # Given/When: プレフィックスなしの名前をパース
        result = QualifiedName.parse("Orders")

        # Then: BASE扱いになる
        assert result == QualifiedName(TableType.BASE, "Orders")

    def test_parse_小文字のプレフィックスの場合_プレフィックスとして扱われないこと(self):
        # Given/When: 小文字のプレフィックス
        result = QualifiedName.parse("cte_Totals")

        # Then: 全体が表示名になる
        assert result == QualifiedName(TableType.BASE, "cte_Totals")

    # __str__のテスト

    def test_str_プレフィックス付きの修飾名になること(self):
        # Given: QualifiedName
        name = QualifiedName(TableType.CTE, "Totals")

        # When/Then: プレフィックス付きの文字列になる
        assert str(name) == "CTE_Totals"

    @pytest.mark.parametrize("name", [
        QualifiedName(TableType.BASE, "Orders"),
        QualifiedName(TableType.CTE, "BASE_Orders"),
        QualifiedName(TableType.BASE, "VIEW_Report"),
        QualifiedName(TableType.VIEW, ""),
    ])
    def test_parse_strの往復で同じ値になること(self, name):
        # Given/When/Then: 表示名がプレフィックスに見える場合でも一意にデコードされる
        assert QualifiedName.parse(str(name)) == name

    # has_prefixメソッドのテスト

    def test_has_prefix_プレフィックスの有無が判定されること(self):
        # Given/When/Then
        assert QualifiedName.has_prefix("VIEW_Report")
        assert not QualifiedName.has_prefix("Report")
