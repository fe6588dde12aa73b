from __future__ import annotations
import sys
import re
import json
import logging
from enum import Enum
from pathlib import Path
from typing import AbstractSet, Any, Callable, Dict, FrozenSet, Iterable, List, Mapping, Optional, Sequence, Tuple
from dataclasses import dataclass, field, replace

import yaml

# ロギング設定
logging.basicConfig(
    level=logging.INFO,
    format='%(levelname)s: %(message)s',
    stream=sys.stderr
)

# ノードの仮配置（レイアウト確定前）の行間隔
ROW_HEIGHT = 180
DEFAULT_EXPORT_FILENAME = "data_model.json"
NEW_TABLE_NAME = "NewTable"

# ============================================
# Domain Layer
# ============================================

# 列挙型


class TableType(str, Enum):
    """エンティティの種別（修飾名のプレフィックス）"""
    BASE = "BASE"
    CTE = "CTE"
    VIEW = "VIEW"

    @property
    def prefix(self) -> str:
        return f"{self.value}_"


class EdgeKind(str, Enum):
    """参照エッジの種別"""
    NORMAL = "normal"
    CALCULATION = "calculation"


class LineageDirection(str, Enum):
    """リネージ探索の方向"""
    UPSTREAM = "upstream"        # target → source（このフィールドは何に依存しているか）
    DOWNSTREAM = "downstream"    # source → target（このフィールドは何に影響するか）


# エッジIDの種別プレフィックス
_EDGE_ID_PREFIXES: Dict[EdgeKind, str] = {
    EdgeKind.NORMAL: "ref",
    EdgeKind.CALCULATION: "calc",
}


# 例外

class SchemaFormatError(ValueError):
    """インポート対象のJSONが解析できない、または構造が不正"""


class ConfigError(ValueError):
    """設定ファイルの内容が不正"""


# 値オブジェクト

@dataclass(frozen=True)
class QualifiedName:
    """エンティティ修飾名 `{PREFIX}_{displayName}` の値オブジェクト"""
    table_type: TableType
    display_name: str

    @staticmethod
    def parse(name: str) -> QualifiedName:
        """Decode a qualified entity name.

        - 'BASE_Orders' → (BASE, 'Orders')
        - 'CTE_Totals' → (CTE, 'Totals')
        - 'Orders' → (BASE, 'Orders')  # プレフィックスなしはBASE扱い

        Args:
            name: エンティティ名

        Returns:
            QualifiedName
        """
        for table_type in TableType:
            if name.startswith(table_type.prefix):
                return QualifiedName(table_type, name[len(table_type.prefix):])
        return QualifiedName(TableType.BASE, name)

    @staticmethod
    def has_prefix(name: str) -> bool:
        return any(name.startswith(t.prefix) for t in TableType)

    def __str__(self) -> str:
        return f"{self.table_type.prefix}{self.display_name}"


@dataclass(frozen=True)
class FieldPointer:
    """フィールド参照 (entity, field) の値オブジェクト

    スキーマ上は 'entity.field'、グラフ上はハンドルID 'entity-field' で表現されます。
    field が None の参照は区切り文字を欠いた不正な参照です。
    """
    entity: str
    field: Optional[str] = None

    @staticmethod
    def parse(ref: str) -> FieldPointer:
        """Parse 'entity.field' into a pointer.

        Supports:
        - 'BASE_Lines.qty' → ('BASE_Lines', 'qty')
        - 'BASE_Lines.a.b' → ('BASE_Lines', 'a.b')
        - 'BASE_Lines' → ('BASE_Lines', None)

        Args:
            ref: 参照文字列

        Returns:
            FieldPointer
        """
        if '.' not in ref:
            return FieldPointer(ref, None)
        entity, field_name = ref.split('.', 1)
        return FieldPointer(entity, field_name)

    @staticmethod
    def from_handle(handle: str, entity_ids: Iterable[str]) -> Optional[FieldPointer]:
        """Decode a handle id against the known entity ids.

        エンティティ名自体に '-' を含む場合があるため、前方一致する最長のIDを採用します。

        Args:
            handle: ハンドルID 'entity-field'
            entity_ids: 既知のエンティティID

        Returns:
            FieldPointer、どのエンティティにも一致しない場合None
        """
        candidates = [e for e in entity_ids if handle.startswith(f"{e}-")]
        if not candidates:
            return None
        entity = max(candidates, key=len)
        return FieldPointer(entity, handle[len(entity) + 1:])

    @property
    def is_malformed(self) -> bool:
        return self.field is None

    def to_ref(self) -> str:
        if self.field is None:
            return self.entity
        return f"{self.entity}.{self.field}"

    def to_handle(self) -> str:
        return f"{self.entity}-{self.field}"

    def __str__(self) -> str:
        return self.to_ref()


# スキーマモデル（外部JSON形式のミラー、振る舞いなし）

@dataclass(frozen=True)
class CalculationSchema:
    """計算式と、その式が読むフィールド参照"""
    expression: str = ""
    refs: Tuple[str, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class FieldSchema:
    """スキーマ上のフィールド定義"""
    name: str
    refs: Tuple[str, ...] = field(default_factory=tuple)
    calculation: Optional[CalculationSchema] = None

    def to_dict(self) -> Dict[str, Any]:
        # 参照も計算もないフィールドは {} で出力する
        data: Dict[str, Any] = {}
        if self.refs:
            data["ref"] = list(self.refs)
        if self.calculation is not None:
            data["calculation"] = {
                "expression": self.calculation.expression,
                "ref": list(self.calculation.refs),
            }
        return data


@dataclass(frozen=True)
class EntitySchema:
    """スキーマ上のエンティティ定義"""
    name: str
    alias: str = ""
    fields: Tuple[FieldSchema, ...] = field(default_factory=tuple)

    def find_field(self, name: str) -> Optional[FieldSchema]:
        for f in self.fields:
            if f.name == name:
                return f
        return None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {}
        if self.alias:
            data["alias"] = self.alias
        data["fields"] = {f.name: f.to_dict() for f in self.fields}
        return data


@dataclass(frozen=True)
class SchemaModel:
    """EntitySchemaのコレクション（Immutable）"""
    entities: Tuple[EntitySchema, ...] = field(default_factory=tuple)

    def find_by_name(self, name: str) -> Optional[EntitySchema]:
        for entity in self.entities:
            if entity.name == name:
                return entity
        return None

    def get_names(self) -> List[str]:
        return [e.name for e in self.entities]

    def __iter__(self):
        return iter(self.entities)

    def __len__(self) -> int:
        return len(self.entities)

    def to_dict(self) -> Dict[str, Any]:
        return {"entities": {e.name: e.to_dict() for e in self.entities}}

    @staticmethod
    def from_dict(data: Any) -> SchemaModel:
        """辞書からSchemaModelを生成（構造チェック付き）

        Args:
            data: json.loads した結果

        Returns:
            SchemaModel

        Raises:
            SchemaFormatError: 想定外の構造の場合
        """
        if not isinstance(data, dict):
            raise SchemaFormatError("Top-level JSON value must be an object")
        entities_data = data.get("entities")
        if not isinstance(entities_data, dict):
            raise SchemaFormatError("'entities' must be an object")

        entities = []
        for entity_name, entity_data in entities_data.items():
            where = f"entities.{entity_name}"
            if not isinstance(entity_data, dict):
                raise SchemaFormatError(f"{where} must be an object")

            alias = entity_data.get("alias") or ""
            if not isinstance(alias, str):
                raise SchemaFormatError(f"{where}.alias must be a string")

            fields_data = entity_data.get("fields", {})
            if not isinstance(fields_data, dict):
                raise SchemaFormatError(f"{where}.fields must be an object")

            fields = tuple(
                _field_schema_from_dict(field_name, field_data, f"{where}.fields.{field_name}")
                for field_name, field_data in fields_data.items()
            )
            entities.append(EntitySchema(name=entity_name, alias=alias, fields=fields))

        return SchemaModel(tuple(entities))


def _refs_from_value(value: Any, where: str) -> Tuple[str, ...]:
    if value is None:
        return tuple()
    if not isinstance(value, list) or not all(isinstance(r, str) for r in value):
        raise SchemaFormatError(f"{where} must be a list of strings")
    return tuple(value)


def _field_schema_from_dict(name: str, data: Any, where: str) -> FieldSchema:
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise SchemaFormatError(f"{where} must be an object")

    refs = _refs_from_value(data.get("ref"), f"{where}.ref")

    calculation = None
    calc_data = data.get("calculation")
    if calc_data is not None:
        if not isinstance(calc_data, dict):
            raise SchemaFormatError(f"{where}.calculation must be an object")
        expression = calc_data.get("expression") or ""
        if not isinstance(expression, str):
            raise SchemaFormatError(f"{where}.calculation.expression must be a string")
        calculation = CalculationSchema(
            expression=expression,
            refs=_refs_from_value(calc_data.get("ref"), f"{where}.calculation.ref")
        )

    return FieldSchema(name=name, refs=refs, calculation=calculation)


# グラフ（編集用のフラットなノード/エッジ表現）

@dataclass(frozen=True)
class Calculation:
    """フィールドの計算式。式はそのまま保持し、解釈しない"""
    expression: str = ""
    refs: Tuple[str, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class TableField:
    """ノード内のフィールド（値として保持）"""
    name: str
    refs: Tuple[str, ...] = field(default_factory=tuple)
    calculation: Optional[Calculation] = None

    def refs_for(self, kind: EdgeKind) -> Tuple[str, ...]:
        if kind is EdgeKind.NORMAL:
            return self.refs
        if kind is EdgeKind.CALCULATION:
            return self.calculation.refs if self.calculation is not None else tuple()
        raise ValueError(f"Unknown edge kind: {kind}")

    def with_refs(self, kind: EdgeKind, refs: Sequence[str]) -> TableField:
        if kind is EdgeKind.NORMAL:
            return replace(self, refs=tuple(refs))
        if kind is EdgeKind.CALCULATION:
            calculation = self.calculation or Calculation()
            return replace(self, calculation=replace(calculation, refs=tuple(refs)))
        raise ValueError(f"Unknown edge kind: {kind}")


@dataclass(frozen=True)
class Position:
    x: float = 0.0
    y: float = 0.0


@dataclass(frozen=True)
class TableNode:
    """エンティティ1件に対応するグラフノード

    id は修飾名（例: 'BASE_Orders'）、label はプレフィックスなしの表示名です。
    """
    id: str
    label: str
    table_type: TableType = TableType.BASE
    alias: str = ""
    fields: Tuple[TableField, ...] = field(default_factory=tuple)
    position: Position = field(default_factory=Position)

    def find_field(self, name: str) -> Optional[TableField]:
        for f in self.fields:
            if f.name == name:
                return f
        return None

    def has_field(self, name: Optional[str]) -> bool:
        return name is not None and self.find_field(name) is not None

    def field_names(self) -> List[str]:
        return [f.name for f in self.fields]

    def with_fields(self, fields: Iterable[TableField]) -> TableNode:
        return replace(self, fields=tuple(fields))

    def replace_field(self, name: str, updater: Callable[[TableField], TableField]) -> TableNode:
        return self.with_fields(updater(f) if f.name == name else f for f in self.fields)


@dataclass(frozen=True)
class FlowEdge:
    """参照1件に対応するグラフエッジ

    計算式はエッジではなくターゲットフィールド側に保持されます。
    IDは (kind, source, target) から決定的に導出されます。
    """
    kind: EdgeKind
    source_field: FieldPointer
    target_field: FieldPointer

    @staticmethod
    def make_id(kind: EdgeKind, source: FieldPointer, target: FieldPointer) -> str:
        return f"{_EDGE_ID_PREFIXES[kind]}-{source.to_ref()}->{target.to_ref()}"

    @property
    def id(self) -> str:
        return FlowEdge.make_id(self.kind, self.source_field, self.target_field)

    @property
    def source(self) -> str:
        return self.source_field.entity

    @property
    def target(self) -> str:
        return self.target_field.entity

    @property
    def source_handle(self) -> str:
        return self.source_field.to_handle()

    @property
    def target_handle(self) -> str:
        return self.target_field.to_handle()

    def touches_entity(self, entity_id: str) -> bool:
        return self.source == entity_id or self.target == entity_id

    def touches_field(self, pointer: FieldPointer) -> bool:
        return self.source_field == pointer or self.target_field == pointer

    def repoint(self, old: FieldPointer, new: FieldPointer) -> FlowEdge:
        """old を指す端点を new に付け替えたエッジを返す"""
        return FlowEdge(
            kind=self.kind,
            source_field=new if self.source_field == old else self.source_field,
            target_field=new if self.target_field == old else self.target_field
        )

    def rename_entity(self, old_id: str, new_id: str) -> FlowEdge:
        def rename(pointer: FieldPointer) -> FieldPointer:
            if pointer.entity == old_id:
                return FieldPointer(new_id, pointer.field)
            return pointer

        return FlowEdge(self.kind, rename(self.source_field), rename(self.target_field))


def _resolve_entity(token: str, nodes: Iterable[TableNode]) -> str:
    """参照のエンティティ部分を修飾名に解決する

    プレフィックス付きならそのまま、表示名で一致するノードがあればそのID、
    どちらでもなければBASE扱いの修飾名を返します。
    """
    if QualifiedName.has_prefix(token):
        return token
    for node in nodes:
        if node.label == token:
            return node.id
    return str(QualifiedName.parse(token))


def _canonical_ref(ref: str, nodes: Iterable[TableNode]) -> str:
    pointer = FieldPointer.parse(ref)
    if pointer.is_malformed:
        return ref
    return FieldPointer(_resolve_entity(pointer.entity, nodes), pointer.field).to_ref()


def _unique(values: Iterable[str]) -> Tuple[str, ...]:
    # 出現順を保った重複排除
    return tuple(dict.fromkeys(values))


# 集約

@dataclass(frozen=True)
class LineageGraph:
    """ノードとエッジの集約（Immutable）

    編集操作は常に新しい LineageGraph を返し、変更があった場合のみ version が進みます。
    """
    nodes: Tuple[TableNode, ...] = field(default_factory=tuple)
    edges: Tuple[FlowEdge, ...] = field(default_factory=tuple)
    version: int = 0

    def find_node(self, node_id: str) -> Optional[TableNode]:
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None

    def node_ids(self) -> List[str]:
        return [n.id for n in self.nodes]

    def find_edge(self, edge_id: str) -> Optional[FlowEdge]:
        for edge in self.edges:
            if edge.id == edge_id:
                return edge
        return None

    def edge_ids(self) -> List[str]:
        return [e.id for e in self.edges]

    def has_field(self, pointer: FieldPointer) -> bool:
        node = self.find_node(pointer.entity)
        return node is not None and node.has_field(pointer.field)

    def edges_into(self, pointer: FieldPointer, kind: Optional[EdgeKind] = None) -> List[FlowEdge]:
        return [
            e for e in self.edges
            if e.target_field == pointer and (kind is None or e.kind is kind)
        ]

    def resolve_entity(self, token: str) -> str:
        return _resolve_entity(token, self.nodes)

    def canonical_ref(self, ref: str) -> str:
        return _canonical_ref(ref, self.nodes)

    def decode_handle(self, handle: str) -> Optional[FieldPointer]:
        """ハンドルIDを既存のノード+フィールドにデコードする

        複数のノードIDが前方一致する場合は長い順に試し、フィールドが存在する最初のものを採用します。

        Args:
            handle: ハンドルID

        Returns:
            FieldPointer、存在するフィールドに一致しない場合None
        """
        entity_ids = set(self.node_ids())
        while entity_ids:
            pointer = FieldPointer.from_handle(handle, entity_ids)
            if pointer is None:
                return None
            if self.has_field(pointer):
                return pointer
            entity_ids.discard(pointer.entity)
        return None

    def handle_for(self, text: str) -> Optional[str]:
        """ハンドルIDまたは 'entity.field' 形式の参照から既存フィールドのハンドルIDを得る"""
        pointer = self.decode_handle(text)
        if pointer is None:
            pointer = FieldPointer.parse(self.canonical_ref(text))
        if pointer.is_malformed or not self.has_field(pointer):
            return None
        return pointer.to_handle()

    def evolve(
        self,
        nodes: Optional[Iterable[TableNode]] = None,
        edges: Optional[Iterable[FlowEdge]] = None
    ) -> LineageGraph:
        return LineageGraph(
            nodes=tuple(nodes) if nodes is not None else self.nodes,
            edges=tuple(edges) if edges is not None else self.edges,
            version=self.version + 1
        )


# ============================================
# Domain Services
# ============================================

def _placeholder_position(index: int) -> Position:
    return Position(0.0, float(index * ROW_HEIGHT))


class FlowBuilder:
    """SchemaModel → LineageGraph の変換（インポート）を行うドメインサービス

    ノードIDは正規化した修飾名になり、プレフィックスのない参照は表示名で解決されます。
    区切り文字のない参照や、存在しないフィールドへの参照は保存されますがエッジにはなりません。
    """

    def __init__(self, model: SchemaModel, materialize_missing: bool = False):
        """
        Args:
            model: 変換元のSchemaModel
            materialize_missing: 参照先のエンティティ/フィールドが未定義の場合に自動生成するか
        """
        self.model = model
        self.materialize_missing = materialize_missing

    def build(self) -> LineageGraph:
        """インポートを実行

        Returns:
            新しいLineageGraph

        Raises:
            SchemaFormatError: 正規化後のエンティティ名が重複する場合
        """
        nodes = [self._build_node(entity, i) for i, entity in enumerate(self.model)]
        self._check_unique_ids(nodes)

        # 全ノードが揃ってから参照を解決する（前方参照・表示名参照のため）
        nodes = [self._canonicalize_refs(node, nodes) for node in nodes]

        if self.materialize_missing:
            nodes = self._materialize_missing(nodes)

        edges = self._build_edges(nodes)
        return LineageGraph(nodes=tuple(nodes), edges=tuple(edges))

    def _build_node(self, entity: EntitySchema, index: int) -> TableNode:
        name = QualifiedName.parse(entity.name)
        fields = tuple(
            TableField(
                name=f.name,
                refs=f.refs,
                calculation=Calculation(f.calculation.expression, f.calculation.refs)
                if f.calculation is not None else None
            )
            for f in entity.fields
        )
        return TableNode(
            id=str(name),
            label=name.display_name,
            table_type=name.table_type,
            alias=entity.alias,
            fields=fields,
            position=_placeholder_position(index)
        )

    def _check_unique_ids(self, nodes: List[TableNode]) -> None:
        seen: Dict[str, int] = {}
        for i, node in enumerate(nodes):
            if node.id in seen:
                first = self.model.entities[seen[node.id]].name
                raise SchemaFormatError(
                    f"Entities '{first}' and '{self.model.entities[i].name}' "
                    f"both resolve to '{node.id}'"
                )
            seen[node.id] = i

    def _canonicalize_refs(self, node: TableNode, nodes: List[TableNode]) -> TableNode:
        fields = []
        for f in node.fields:
            for kind in EdgeKind:
                refs = f.refs_for(kind)
                canonical = _unique(_canonical_ref(r, nodes) for r in refs)
                if canonical != refs:
                    f = f.with_refs(kind, canonical)
            fields.append(f)
        return node.with_fields(fields)

    def _materialize_missing(self, nodes: List[TableNode]) -> List[TableNode]:
        """参照されているが未定義のエンティティ/フィールドを生成する

        Args:
            nodes: 参照正規化済みのノード

        Returns:
            新しいノードのリスト（生成したノードは末尾に追加）
        """
        by_id: Dict[str, TableNode] = {n.id: n for n in nodes}
        order = [n.id for n in nodes]

        for node in nodes:
            for f in node.fields:
                for kind in EdgeKind:
                    for ref in f.refs_for(kind):
                        pointer = FieldPointer.parse(ref)
                        if pointer.is_malformed:
                            continue
                        target = by_id.get(pointer.entity)
                        if target is None:
                            name = QualifiedName.parse(pointer.entity)
                            target = TableNode(
                                id=pointer.entity,
                                label=name.display_name,
                                table_type=name.table_type,
                                position=_placeholder_position(len(order))
                            )
                            order.append(target.id)
                            logging.info(f"エンティティ '{pointer.entity}' は未定義のため、参照から動的生成します")
                        if not target.has_field(pointer.field):
                            target = target.with_fields(target.fields + (TableField(pointer.field),))
                            logging.info(f"フィールド '{pointer.to_ref()}' は未定義のため、参照から動的生成します")
                        by_id[target.id] = target

        return [by_id[node_id] for node_id in order]

    def _build_edges(self, nodes: List[TableNode]) -> List[FlowEdge]:
        return _edges_from_refs(nodes, warn=True)


def _edges_from_refs(nodes: Sequence[TableNode], warn: bool = False) -> List[FlowEdge]:
    """保存済み参照（通常・計算）のうち、既存フィールドに解決できるものをエッジにする

    Args:
        nodes: 参照正規化済みのノード
        warn: 解決できない参照を警告として出力するか（Falseならdebug）

    Returns:
        重複を除いたエッジのリスト（参照の出現順）
    """
    log = logging.warning if warn else logging.debug
    by_id = {n.id: n for n in nodes}
    edges: Dict[str, FlowEdge] = {}

    for node in nodes:
        for f in node.fields:
            target = FieldPointer(node.id, f.name)
            for kind in EdgeKind:
                for ref in f.refs_for(kind):
                    source = FieldPointer.parse(ref)
                    if source.is_malformed:
                        log(f"Malformed reference '{ref}' in '{target.to_ref()}' is ignored")
                        continue
                    source_node = by_id.get(source.entity)
                    if source_node is None or not source_node.has_field(source.field):
                        log(f"Unknown reference '{ref}' in '{target.to_ref()}' is ignored")
                        continue
                    edge = FlowEdge(kind, source, target)
                    edges.setdefault(edge.id, edge)

    return list(edges.values())


class ModelSerializer:
    """LineageGraph → SchemaModel の変換（エクスポート）を行うドメインサービス"""

    def __init__(self, graph: LineageGraph):
        self.graph = graph

    def serialize(self) -> SchemaModel:
        """エクスポートを実行

        Returns:
            SchemaModel（同じグラフからは常に同じ結果）
        """
        return SchemaModel(tuple(self._serialize_node(node) for node in self.graph.nodes))

    def _serialize_node(self, node: TableNode) -> EntitySchema:
        entity_name = str(QualifiedName(node.table_type, node.label))
        return EntitySchema(
            name=entity_name,
            alias=node.alias,
            fields=tuple(self._serialize_field(node, f) for f in node.fields)
        )

    def _serialize_field(self, node: TableNode, table_field: TableField) -> FieldSchema:
        target = FieldPointer(node.id, table_field.name)

        refs = self._merge_refs(table_field.refs, target, EdgeKind.NORMAL)
        calc_refs = self._merge_refs(table_field.refs_for(EdgeKind.CALCULATION), target, EdgeKind.CALCULATION)

        calculation = None
        if table_field.calculation is not None:
            calculation = CalculationSchema(table_field.calculation.expression, calc_refs)
        elif calc_refs:
            calculation = CalculationSchema("", calc_refs)

        return FieldSchema(name=table_field.name, refs=refs, calculation=calculation)

    def _merge_refs(self, stored: Tuple[str, ...], target: FieldPointer, kind: EdgeKind) -> Tuple[str, ...]:
        from_edges = [e.source_field.to_ref() for e in self.graph.edges_into(target, kind)]
        return _unique([self.graph.canonical_ref(r) for r in stored] + from_edges)


LayoutFunction = Callable[[Tuple[TableNode, ...], Tuple[FlowEdge, ...], str], Mapping[str, Tuple[float, float]]]


class FlowEditor:
    """参照整合性を保ったままグラフを編集するドメインサービス（ステートレス）

    すべての操作は LineageGraph を受け取り LineageGraph を返します。
    何も変わらない操作（空白の名前、重複、存在しないID）は同じオブジェクトをそのまま返します。
    """

    # エンティティ操作

    def add_table(self, graph: LineageGraph, table_type: TableType = TableType.BASE) -> Tuple[LineageGraph, str]:
        """一意な名前の空テーブルを追加

        Args:
            graph: 編集対象
            table_type: テーブル種別

        Returns:
            (新しいLineageGraph, 追加したノードID)
        """
        name = self._unique_table_name(graph, table_type)
        node = TableNode(
            id=str(QualifiedName(table_type, name)),
            label=name,
            table_type=table_type,
            position=_placeholder_position(len(graph.nodes))
        )
        return graph.evolve(nodes=graph.nodes + (node,)), node.id

    def _unique_table_name(self, graph: LineageGraph, table_type: TableType) -> str:
        labels = {n.label for n in graph.nodes}
        ids = set(graph.node_ids())
        candidate = NEW_TABLE_NAME
        counter = 0
        while candidate in labels or str(QualifiedName(table_type, candidate)) in ids:
            counter += 1
            candidate = f"{NEW_TABLE_NAME}{counter}"
        return candidate

    def rename_entity(self, graph: LineageGraph, old_id: str, new_name: str) -> LineageGraph:
        """エンティティの表示名を変更し、依存するエッジと参照を書き換える

        新しい修飾名が既存エンティティと衝突する場合は何もしません。

        Args:
            graph: 編集対象
            old_id: 変更前のノードID
            new_name: 新しい表示名（プレフィックスなし）

        Returns:
            新しいLineageGraph
        """
        name = (new_name or "").strip()
        node = graph.find_node(old_id)
        if not name or node is None:
            return graph

        new_id = str(QualifiedName(node.table_type, name))
        if new_id == old_id:
            return graph
        if graph.find_node(new_id) is not None:
            logging.warning(f"エンティティ '{new_id}' は既に存在するため、'{old_id}' のリネームをスキップします")
            return graph

        def rewrite(ref: str) -> Optional[str]:
            pointer = FieldPointer.parse(ref)
            if not pointer.is_malformed and pointer.entity == old_id:
                return FieldPointer(new_id, pointer.field).to_ref()
            return ref

        nodes = self._map_stored_refs(
            (replace(n, id=new_id, label=name) if n.id == old_id else n for n in graph.nodes),
            rewrite
        )
        edges = self._link_stored_refs(nodes, (e.rename_entity(old_id, new_id) for e in graph.edges))
        return graph.evolve(nodes=nodes, edges=edges)

    def update_alias(self, graph: LineageGraph, entity_id: str, alias: str) -> LineageGraph:
        node = graph.find_node(entity_id)
        alias = (alias or "").strip()
        if node is None or node.alias == alias:
            return graph
        return graph.evolve(nodes=(replace(n, alias=alias) if n.id == entity_id else n for n in graph.nodes))

    def delete_entity(self, graph: LineageGraph, entity_id: str) -> LineageGraph:
        """ノードと、それに接続するすべてのエッジ・参照を削除"""
        if graph.find_node(entity_id) is None:
            return graph

        def drop(ref: str) -> Optional[str]:
            pointer = FieldPointer.parse(ref)
            if not pointer.is_malformed and pointer.entity == entity_id:
                return None
            return ref

        nodes = tuple(n for n in graph.nodes if n.id != entity_id)
        return graph.evolve(
            nodes=self._map_stored_refs(nodes, drop),
            edges=(e for e in graph.edges if not e.touches_entity(entity_id))
        )

    # フィールド操作

    def add_field(self, graph: LineageGraph, entity_id: str, field_name: str) -> LineageGraph:
        name = (field_name or "").strip()
        node = graph.find_node(entity_id)
        if not name or node is None:
            return graph
        if node.has_field(name):
            logging.info(f"フィールド '{entity_id}.{name}' は既に存在します")
            return graph
        nodes = tuple(
            n.with_fields(n.fields + (TableField(name),)) if n.id == entity_id else n
            for n in graph.nodes
        )
        return graph.evolve(nodes=nodes, edges=self._link_stored_refs(nodes, graph.edges))

    def rename_field(self, graph: LineageGraph, entity_id: str, old_name: str, new_name: str) -> LineageGraph:
        """フィールド名を変更し、ハンドルを含むエッジと参照をすべて書き換える

        Args:
            graph: 編集対象
            entity_id: ノードID
            old_name: 変更前のフィールド名
            new_name: 新しいフィールド名

        Returns:
            新しいLineageGraph
        """
        name = (new_name or "").strip()
        node = graph.find_node(entity_id)
        if not name or name == old_name or node is None or not node.has_field(old_name):
            return graph
        if node.has_field(name):
            logging.warning(f"フィールド '{entity_id}.{name}' は既に存在するため、リネームをスキップします")
            return graph

        old = FieldPointer(entity_id, old_name)
        new = FieldPointer(entity_id, name)

        def rewrite(ref: str) -> Optional[str]:
            return new.to_ref() if FieldPointer.parse(ref) == old else ref

        nodes = self._map_stored_refs(
            (n.replace_field(old_name, lambda f: replace(f, name=name)) if n.id == entity_id else n
             for n in graph.nodes),
            rewrite
        )
        edges = self._link_stored_refs(nodes, (e.repoint(old, new) for e in graph.edges))
        return graph.evolve(nodes=nodes, edges=edges)

    def delete_field(self, graph: LineageGraph, entity_id: str, field_name: str) -> LineageGraph:
        node = graph.find_node(entity_id)
        if node is None or not node.has_field(field_name):
            return graph

        pointer = FieldPointer(entity_id, field_name)

        def drop(ref: str) -> Optional[str]:
            return None if FieldPointer.parse(ref) == pointer else ref

        nodes = tuple(
            n.with_fields(f for f in n.fields if f.name != field_name) if n.id == entity_id else n
            for n in graph.nodes
        )
        return graph.evolve(
            nodes=self._map_stored_refs(nodes, drop),
            edges=(e for e in graph.edges if not e.touches_field(pointer))
        )

    def set_calculation(self, graph: LineageGraph, entity_id: str, field_name: str, expression: str) -> LineageGraph:
        """計算式のテキストだけを置き換える（計算参照はエッジ操作でのみ変わる）"""
        node = graph.find_node(entity_id)
        if node is None or not node.has_field(field_name):
            return graph
        current = node.find_field(field_name).calculation
        if current is not None and current.expression == expression:
            return graph

        def update(f: TableField) -> TableField:
            return replace(f, calculation=replace(f.calculation or Calculation(), expression=expression))

        return graph.evolve(nodes=(
            n.replace_field(field_name, update) if n.id == entity_id else n
            for n in graph.nodes
        ))

    # エッジ操作

    def connect(
        self,
        graph: LineageGraph,
        source_handle: str,
        target_handle: str,
        kind: EdgeKind,
        expression: Optional[str] = None
    ) -> LineageGraph:
        """2つのフィールドをエッジで接続し、ターゲットフィールドの参照にも追加する

        Args:
            graph: 編集対象
            source_handle: 参照元のハンドルID
            target_handle: 参照先（依存する側）のハンドルID
            kind: エッジ種別
            expression: 計算式（CALCULATIONの場合のみ使用）

        Returns:
            新しいLineageGraph
        """
        source = graph.decode_handle(source_handle)
        target = graph.decode_handle(target_handle)
        if source is None or target is None or source == target:
            logging.debug(f"Cannot connect '{source_handle}' to '{target_handle}'")
            return graph

        edge = FlowEdge(kind, source, target)
        exists = graph.find_edge(edge.id) is not None
        ref = source.to_ref()

        def update(f: TableField) -> TableField:
            refs = f.refs_for(kind)
            if ref not in refs:
                f = f.with_refs(kind, refs + (ref,))
            if kind is EdgeKind.CALCULATION:
                calculation = f.calculation or Calculation()
                if expression is not None:
                    calculation = replace(calculation, expression=expression)
                f = replace(f, calculation=calculation)
            return f

        nodes = tuple(
            n.replace_field(target.field, update) if n.id == target.entity else n
            for n in graph.nodes
        )
        if exists and nodes == graph.nodes:
            return graph
        return graph.evolve(nodes=nodes, edges=graph.edges if exists else graph.edges + (edge,))

    def disconnect(self, graph: LineageGraph, edge_id: str) -> LineageGraph:
        """エッジを削除し、ターゲットフィールドの対応する参照も取り除く"""
        edge = graph.find_edge(edge_id)
        if edge is None:
            return graph

        ref = edge.source_field.to_ref()

        def update(f: TableField) -> TableField:
            return f.with_refs(edge.kind, tuple(r for r in f.refs_for(edge.kind) if r != ref))

        nodes = tuple(
            n.replace_field(edge.target_field.field, update) if n.id == edge.target else n
            for n in graph.nodes
        )
        return graph.evolve(nodes=nodes, edges=(e for e in graph.edges if e.id != edge_id))

    def remove_reference(
        self,
        graph: LineageGraph,
        entity_id: str,
        field_name: str,
        ref: str,
        calculation: bool = False
    ) -> LineageGraph:
        """フィールドに保存された参照を1件削除し、対応するエッジも削除する"""
        node = graph.find_node(entity_id)
        if node is None or not node.has_field(field_name):
            return graph

        kind = EdgeKind.CALCULATION if calculation else EdgeKind.NORMAL
        canonical = graph.canonical_ref(ref)
        refs = node.find_field(field_name).refs_for(kind)
        remaining = tuple(r for r in refs if r not in (ref, canonical))

        target = FieldPointer(entity_id, field_name)
        edge_id = FlowEdge.make_id(kind, FieldPointer.parse(canonical), target)
        has_edge = graph.find_edge(edge_id) is not None
        if remaining == refs and not has_edge:
            return graph

        nodes = tuple(
            n.replace_field(field_name, lambda f: f.with_refs(kind, remaining)) if n.id == entity_id else n
            for n in graph.nodes
        )
        return graph.evolve(nodes=nodes, edges=(e for e in graph.edges if e.id != edge_id))

    def reconfigure_edge(
        self,
        graph: LineageGraph,
        edge_id: str,
        kind: EdgeKind,
        expression: Optional[str] = None
    ) -> LineageGraph:
        """既存エッジの種別を変更する（同じ種別なら計算式のみ更新）"""
        edge = graph.find_edge(edge_id)
        if edge is None:
            return graph

        if edge.kind is kind:
            if kind is EdgeKind.CALCULATION and expression is not None:
                return self.set_calculation(graph, edge.target, edge.target_field.field, expression)
            return graph

        result = self.disconnect(graph, edge_id)
        result = self.connect(result, edge.source_handle, edge.target_handle, kind, expression)
        return replace(result, version=graph.version + 1)

    # レイアウト

    def apply_layout(self, graph: LineageGraph, layout: LayoutFunction, direction: str = "LR") -> LineageGraph:
        """外部レイアウト関数の結果で全ノードの座標を上書きする

        結果に含まれないノードは仮配置に戻します（部分マージはしない）。

        Args:
            graph: 編集対象
            layout: layout(nodes, edges, direction) -> {node_id: (x, y)}
            direction: レイアウト方向

        Returns:
            新しいLineageGraph
        """
        positions = layout(graph.nodes, graph.edges, direction)
        nodes = []
        for i, node in enumerate(graph.nodes):
            if node.id in positions:
                x, y = positions[node.id]
                position = Position(float(x), float(y))
            else:
                position = _placeholder_position(i)
            nodes.append(replace(node, position=position))
        return graph.evolve(nodes=nodes)

    def _link_stored_refs(self, nodes: Tuple[TableNode, ...], edges: Iterable[FlowEdge]) -> Tuple[FlowEdge, ...]:
        """未解決だった保存済み参照のうち、編集で解決できるようになったものにエッジを張る"""
        edges = tuple(edges)
        known = {e.id for e in edges}
        added = tuple(e for e in _edges_from_refs(nodes) if e.id not in known)
        for edge in added:
            logging.info(f"参照 '{edge.source_field.to_ref()}' が解決できるようになったため、エッジ '{edge.id}' を追加します")
        return edges + added

    def _map_stored_refs(
        self,
        nodes: Iterable[TableNode],
        mapper: Callable[[str], Optional[str]]
    ) -> Tuple[TableNode, ...]:
        """全フィールドの保存済み参照（通常・計算）を書き換える。mapperがNoneを返した参照は削除"""
        result = []
        for node in nodes:
            fields = []
            for f in node.fields:
                for kind in EdgeKind:
                    refs = f.refs_for(kind)
                    mapped = tuple(m for m in (mapper(r) for r in refs) if m is not None)
                    if mapped != refs:
                        f = f.with_refs(kind, mapped)
                fields.append(f)
            result.append(node.with_fields(fields))
        return tuple(result)


# ハンドルの照合属性と次に辿る属性（方向ごと）
_TRAVERSAL_ATTRIBUTES: Dict[LineageDirection, Tuple[str, str]] = {
    LineageDirection.UPSTREAM: ("target_handle", "source_handle"),
    LineageDirection.DOWNSTREAM: ("source_handle", "target_handle"),
}


class LineageTracer:
    """フィールドのリネージ（依存関係の推移閉包）をエッジ集合として求めるドメインサービス"""

    def __init__(self, direction: LineageDirection = LineageDirection.UPSTREAM):
        self.direction = direction

    def trace(self, edges: Iterable[FlowEdge], field_handle: str) -> FrozenSet[str]:
        """ワークリストによる反復探索（循環参照でも停止する）

        Args:
            edges: 探索対象のエッジ
            field_handle: 起点フィールドのハンドルID

        Returns:
            到達したエッジIDの集合
        """
        match_attr, next_attr = _TRAVERSAL_ATTRIBUTES[self.direction]

        index: Dict[str, List[FlowEdge]] = {}
        for edge in edges:
            index.setdefault(getattr(edge, match_attr), []).append(edge)

        visited_fields = set()
        visited_edges = set()
        worklist = [field_handle]

        while worklist:
            handle = worklist.pop()
            if handle in visited_fields:
                continue
            visited_fields.add(handle)
            for edge in index.get(handle, []):
                visited_edges.add(edge.id)
                worklist.append(getattr(edge, next_attr))

        return frozenset(visited_edges)


@dataclass(frozen=True)
class HighlightState:
    """ハイライト中のエッジ集合と、その起点フィールド（Immutable）"""
    root: Optional[str] = None
    edge_ids: FrozenSet[str] = field(default_factory=frozenset)

    @property
    def is_active(self) -> bool:
        return self.root is not None

    def __contains__(self, edge_id: str) -> bool:
        return edge_id in self.edge_ids

    def select(self, tracer: LineageTracer, edges: Iterable[FlowEdge], field_handle: str) -> HighlightState:
        """同じフィールドの再選択で解除、別フィールドなら結果を置き換える（累積しない）"""
        if self.root == field_handle:
            return HighlightState()
        return HighlightState(field_handle, tracer.trace(edges, field_handle))

    def cleared(self) -> HighlightState:
        return HighlightState()

    def retain(self, edges: Iterable[FlowEdge]) -> HighlightState:
        """存在しなくなったエッジをハイライトから外す"""
        kept = self.edge_ids & {e.id for e in edges}
        if kept == self.edge_ids:
            return self
        return replace(self, edge_ids=frozenset(kept))


# ============================================
# View Projection
# ============================================

HIGHLIGHT_STROKE_WIDTH = 3
DEFAULT_STROKE_WIDTH = 2
DIMMED_STROKE_WIDTH = 1
DIMMED_OPACITY = 0.15


@dataclass(frozen=True)
class EdgeStyle:
    stroke: str
    dash: Optional[str]
    animated: bool


# 種別ごとのデフォルトスタイル
KIND_STYLES: Dict[EdgeKind, EdgeStyle] = {
    EdgeKind.NORMAL: EdgeStyle(stroke="#fd5d5dff", dash=None, animated=True),
    EdgeKind.CALCULATION: EdgeStyle(stroke="#0066ff", dash="5,5", animated=False),
}


@dataclass(frozen=True)
class VisibilityFilter:
    """エッジ表示の切り替え"""
    show_normal: bool = True
    show_calculation: bool = True
    only_highlighted: bool = False

    def shows(self, kind: EdgeKind) -> bool:
        return {
            EdgeKind.NORMAL: self.show_normal,
            EdgeKind.CALCULATION: self.show_calculation,
        }[kind]


@dataclass(frozen=True)
class RenderedEdge:
    """描画用にスタイルを付与したエッジ"""
    edge: FlowEdge
    stroke: str
    dash: Optional[str]
    animated: bool
    opacity: float = 1.0
    stroke_width: int = DEFAULT_STROKE_WIDTH
    highlighted: bool = False

    @property
    def id(self) -> str:
        return self.edge.id

    @property
    def kind(self) -> EdgeKind:
        return self.edge.kind


class EdgeProjector:
    """表示切り替えとハイライトからエッジの表示集合を求める（副作用なし）"""

    def project(
        self,
        edges: Iterable[FlowEdge],
        highlight: AbstractSet[str],
        visibility: VisibilityFilter
    ) -> Tuple[RenderedEdge, ...]:
        """エッジをフィルタし、スタイルを付与する

        Args:
            edges: 全エッジ
            highlight: ハイライト中のエッジID
            visibility: 表示切り替え

        Returns:
            表示するRenderedEdgeのタプル（元の順序を保持）
        """
        return tuple(
            self._style(edge, highlight)
            for edge in edges
            if self._is_visible(edge, highlight, visibility)
        )

    def _is_visible(self, edge: FlowEdge, highlight: AbstractSet[str], visibility: VisibilityFilter) -> bool:
        if visibility.only_highlighted:
            return edge.id in highlight
        return visibility.shows(edge.kind)

    def _style(self, edge: FlowEdge, highlight: AbstractSet[str]) -> RenderedEdge:
        base = KIND_STYLES[edge.kind]
        if not highlight:
            return RenderedEdge(edge, base.stroke, base.dash, base.animated)
        if edge.id in highlight:
            return RenderedEdge(
                edge, base.stroke, base.dash,
                animated=True,
                stroke_width=HIGHLIGHT_STROKE_WIDTH,
                highlighted=True
            )
        return RenderedEdge(
            edge, base.stroke, base.dash,
            animated=False,
            opacity=DIMMED_OPACITY,
            stroke_width=DIMMED_STROKE_WIDTH
        )


@dataclass(frozen=True)
class MermaidNode:
    """Mermaidノードの値オブジェクト"""
    node_id: str
    label: str
    style_class: str

    def to_mermaid_line(self) -> str:
        """Mermaid行を生成"""
        return f'{self.node_id}["{self.label}"]:::{self.style_class}'

    @staticmethod
    def sanitize_id(s: str) -> str:
        """Generate safe Mermaid identifier from string.

        Args:
            s: 元の文字列

        Returns:
            Mermaid識別子として安全な文字列
        """
        s = re.sub(r"[\s\-./\\()\[\]{}:*+<>\"']+", "_", str(s))
        s = re.sub(r"_+", "_", s).strip("_")
        if not s:
            s = "id"
        if re.match(r"^[0-9]", s):
            s = "n_" + s
        return s


# ============================================
# Adapter Layer
# ============================================

@dataclass(frozen=True)
class EditorConfig:
    """エディタ設定（YAMLから読み込み）"""
    visibility: VisibilityFilter = field(default_factory=VisibilityFilter)
    direction: LineageDirection = LineageDirection.UPSTREAM
    layout_direction: str = "LR"
    export_filename: str = DEFAULT_EXPORT_FILENAME
    materialize_missing: bool = False

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> EditorConfig:
        """辞書からEditorConfigを生成。未指定のキーはデフォルト値"""
        defaults = EditorConfig()

        visibility_data = data.get("visibility") or {}
        if not isinstance(visibility_data, dict):
            raise ConfigError("'visibility' must be a mapping")
        visibility = VisibilityFilter(
            show_normal=_config_flag(visibility_data, "show_normal", True, "visibility.show_normal"),
            show_calculation=_config_flag(visibility_data, "show_calculation", True, "visibility.show_calculation"),
            only_highlighted=_config_flag(visibility_data, "only_highlighted", False, "visibility.only_highlighted")
        )

        direction_value = data.get("direction", defaults.direction.value)
        try:
            direction = LineageDirection(direction_value)
        except ValueError:
            raise ConfigError(f"Unknown lineage direction: {direction_value}") from None

        return EditorConfig(
            visibility=visibility,
            direction=direction,
            layout_direction=str(data.get("layout_direction", defaults.layout_direction)),
            export_filename=str(data.get("export_filename", defaults.export_filename)),
            materialize_missing=_config_flag(
                data, "materialize_missing", defaults.materialize_missing, "materialize_missing"
            )
        )


def _config_flag(data: Dict[str, Any], key: str, default: bool, where: str) -> bool:
    # 'false' のような文字列は真偽値として扱わない
    value = data.get(key, default)
    if not isinstance(value, bool):
        raise ConfigError(f"'{where}' must be true or false, got {value!r}")
    return value


class YAMLAdapter:
    """YAMLファイルからエディタ設定を読み込むアダプター"""

    def load_config(self, yaml_path: str) -> EditorConfig:
        """YAMLファイルから設定をロード

        Args:
            yaml_path: YAMLファイルパス

        Returns:
            EditorConfig

        Raises:
            ConfigError: YAMLとして読めない、またはマッピングでない場合
        """
        try:
            data = yaml.safe_load(Path(yaml_path).read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError) as e:
            raise ConfigError(f"Cannot read '{yaml_path}': {e}") from e
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in '{yaml_path}': {e}") from e
        if data is None:
            return EditorConfig()
        if not isinstance(data, dict):
            raise ConfigError(f"Config '{yaml_path}' must be a mapping")
        return EditorConfig.from_dict(data)


class JSONAdapter:
    """スキーマモデルJSONの読み書きを行うアダプター"""

    def loads(self, text: str) -> SchemaModel:
        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            raise SchemaFormatError(f"Invalid JSON: {e}") from e
        return SchemaModel.from_dict(data)

    def load_schema(self, json_path: str) -> SchemaModel:
        """JSONファイルからスキーマモデルをロード

        Args:
            json_path: JSONファイルパス（拡張子 .json）

        Returns:
            SchemaModel

        Raises:
            SchemaFormatError: 拡張子・読み込み・解析・構造のいずれかが不正な場合
        """
        path = Path(json_path)
        if path.suffix.lower() != ".json":
            raise SchemaFormatError(f"'{json_path}' is not a JSON file")
        try:
            text = path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            raise SchemaFormatError(f"Cannot read '{json_path}': {e}") from e
        return self.loads(text)

    def dumps(self, model: SchemaModel) -> str:
        return json.dumps(model.to_dict(), indent=2, ensure_ascii=False)

    def write_schema(self, model: SchemaModel, output_path: str) -> Path:
        path = Path(output_path)
        path.write_text(self.dumps(model), encoding="utf-8")
        return path


# ============================================
# Session
# ============================================

class EditorSession:
    """グラフを所有する編集セッション

    グラフ・ハイライト・表示切り替えを保持し、すべての編集はグラフ全体の置き換えとして反映されます。
    """

    def __init__(self, config: Optional[EditorConfig] = None, graph: Optional[LineageGraph] = None):
        self.config = config or EditorConfig()
        self.graph = graph or LineageGraph()
        self.highlight = HighlightState()
        self.visibility = self.config.visibility
        self.direction = self.config.direction
        self.editor = FlowEditor()
        self._projector = EdgeProjector()
        self._json = JSONAdapter()

    # インポート/エクスポート

    def import_json(self, text: str) -> LineageGraph:
        """JSON文字列を読み込み、グラフを置き換える

        解析・変換がすべて成功した場合のみ状態を更新します。

        Raises:
            SchemaFormatError: JSONが不正な場合（現在のグラフは変更されない）
        """
        graph = FlowBuilder(self._json.loads(text), self.config.materialize_missing).build()
        self._load(graph)
        return graph

    def import_file(self, json_path: str) -> LineageGraph:
        graph = FlowBuilder(self._json.load_schema(json_path), self.config.materialize_missing).build()
        self._load(graph)
        logging.info(f"'{json_path}' から {len(graph.nodes)} エンティティ / {len(graph.edges)} エッジを読み込みました")
        return graph

    def export_model(self) -> SchemaModel:
        return ModelSerializer(self.graph).serialize()

    def export_json(self) -> str:
        return self._json.dumps(self.export_model())

    def export_file(self, destination: str) -> Path:
        """スキーマモデルをJSONファイルに出力。ディレクトリ指定時は設定のファイル名で出力"""
        path = Path(destination)
        if path.is_dir():
            path = path / self.config.export_filename
        return self._json.write_schema(self.export_model(), str(path))

    # 編集

    def edit(self, operation: Callable[..., LineageGraph], *args, **kwargs) -> LineageGraph:
        """FlowEditorの操作を現在のグラフに適用する

        Example:
            session.edit(session.editor.rename_field, "BASE_Orders", "id", "order_id")
        """
        self._commit(operation(self.graph, *args, **kwargs))
        return self.graph

    def add_table(self, table_type: TableType = TableType.BASE) -> str:
        graph, node_id = self.editor.add_table(self.graph, table_type)
        self._commit(graph)
        return node_id

    def relayout(self, layout: LayoutFunction) -> LineageGraph:
        return self.edit(self.editor.apply_layout, layout, self.config.layout_direction)

    # リネージ

    def select_field(self, field_handle: str) -> HighlightState:
        tracer = LineageTracer(self.direction)
        self.highlight = self.highlight.select(tracer, self.graph.edges, field_handle)
        return self.highlight

    def set_direction(self, direction: LineageDirection) -> None:
        if direction is not self.direction:
            self.direction = direction
            self.highlight = self.highlight.cleared()

    def set_visibility(self, **changes: bool) -> VisibilityFilter:
        self.visibility = replace(self.visibility, **changes)
        return self.visibility

    def clear_highlight(self) -> None:
        self.highlight = self.highlight.cleared()

    def rendered_edges(self) -> Tuple[RenderedEdge, ...]:
        return self._projector.project(self.graph.edges, self.highlight.edge_ids, self.visibility)

    def _load(self, graph: LineageGraph) -> None:
        self.graph = graph
        self.highlight = HighlightState()

    def _commit(self, graph: LineageGraph) -> None:
        if graph is self.graph:
            return
        self.graph = graph
        self.highlight = self.highlight.retain(graph.edges)


# ============================================
# UseCase Layer
# ============================================

class GenerateMermaidDiagramUseCase:
    """表示中のグラフからMermaid図を生成するUseCase（ステートレス）"""

    CLASS_DEFS = [
        "  classDef BASE_bg fill:#E8F5E9,stroke:#2E7D32,stroke-width:2px;",
        "  classDef CTE_bg fill:#E3F2FD,stroke:#1565C0,stroke-width:2px;",
        "  classDef VIEW_bg fill:#F3E5F5,stroke:#6A1B9A,stroke-width:2px;",
        "  classDef field fill:#F5F5F5,stroke:#9E9E9E,stroke-width:1px,color:#424242;",
        "  classDef selected fill:#FFF3E0,stroke:#EF6C00,stroke-width:2px,color:#BF360C;",
    ]

    def execute(
        self,
        graph: LineageGraph,
        rendered_edges: Sequence[RenderedEdge],
        highlight: Optional[HighlightState] = None,
        layout_direction: str = "LR"
    ) -> str:
        """Mermaid図の文字列を生成

        Args:
            graph: グラフ
            rendered_edges: EdgeProjectorの出力
            highlight: 起点フィールドの強調表示用
            layout_direction: Mermaidのグラフ方向

        Returns:
            Mermaid図のMarkdown文字列
        """
        root = highlight.root if highlight is not None else None
        field_ids = self._assign_field_ids(graph)

        lines = ["```mermaid", f"graph {layout_direction}"]
        lines.extend(self.CLASS_DEFS)
        lines.append("")

        for node in graph.nodes:
            lines.extend(self._subgraph(node, field_ids, root))
            lines.append("")

        # 計算式ラベルはターゲットフィールドごとに最初のエッジにだけ付ける
        labelled = set()
        for rendered in rendered_edges:
            edge = rendered.edge
            s_id = field_ids[edge.source_handle]
            t_id = field_ids[edge.target_handle]
            if edge.kind is EdgeKind.CALCULATION:
                expression = self._expression(graph, edge.target_field)
                if expression and edge.target_handle not in labelled:
                    labelled.add(edge.target_handle)
                    lines.append(f'  {s_id} -.->|"{self._escape(expression)}"| {t_id}')
                else:
                    lines.append(f'  {s_id} -.-> {t_id}')
            else:
                lines.append(f'  {s_id} --> {t_id}')

        if rendered_edges:
            lines.append("")
        for i, rendered in enumerate(rendered_edges):
            lines.append(f"  linkStyle {i} {self._link_style(rendered)}")

        lines.append("```")
        return "\n".join(lines)

    def _assign_field_ids(self, graph: LineageGraph) -> Dict[str, str]:
        ids: Dict[str, str] = {}
        used = set()
        for node in graph.nodes:
            for f in node.fields:
                handle = FieldPointer(node.id, f.name).to_handle()
                base = MermaidNode.sanitize_id(handle)
                candidate = base
                counter = 1
                while candidate in used:
                    counter += 1
                    candidate = f"{base}_{counter}"
                used.add(candidate)
                ids[handle] = candidate
        return ids

    def _subgraph(self, node: TableNode, field_ids: Dict[str, str], root: Optional[str]) -> List[str]:
        subgraph_id = MermaidNode.sanitize_id(f"entity_{node.id}")
        label = f"{node.label} ({node.alias})" if node.alias else node.label
        lines = [f'  subgraph {subgraph_id}["{self._escape(label)}"]']
        for f in node.fields:
            handle = FieldPointer(node.id, f.name).to_handle()
            style = "selected" if handle == root else "field"
            mermaid_node = MermaidNode(field_ids[handle], self._escape(f.name), style)
            lines.append(f"    {mermaid_node.to_mermaid_line()}")
        lines.append("  end")
        lines.append(f"  class {subgraph_id} {node.table_type.value}_bg")
        return lines

    def _expression(self, graph: LineageGraph, pointer: FieldPointer) -> str:
        node = graph.find_node(pointer.entity)
        table_field = node.find_field(pointer.field) if node is not None else None
        if table_field is None or table_field.calculation is None:
            return ""
        return table_field.calculation.expression

    def _link_style(self, rendered: RenderedEdge) -> str:
        styles = [f"stroke:{rendered.stroke}", f"stroke-width:{rendered.stroke_width}px"]
        if rendered.dash:
            styles.append(f"stroke-dasharray:{rendered.dash.replace(',', ' ')}")
        if rendered.opacity < 1.0:
            styles.append(f"stroke-opacity:{rendered.opacity}")
        return ",".join(styles)

    @staticmethod
    def _escape(text: str) -> str:
        return text.replace('"', "#quot;")


def main(
    input_json: str,
    output: str,
    trace_field: Optional[str] = None,
    config_path: Optional[str] = None,
    downstream: bool = False,
    only_highlighted: bool = False
) -> Path:
    """Load a schema model JSON and write it back as normalized JSON or a Mermaid diagram.

    Args:
        input_json: Path to input schema model JSON
        output: Output path (.md → Mermaid Markdown, otherwise JSON; a directory gets data_model.json)
        trace_field: Field to highlight ('entity.field' or handle id 'entity-field')
        config_path: Optional YAML config
        downstream: Trace downstream instead of upstream
        only_highlighted: Draw only the highlighted edges

    Returns:
        書き出したファイルのパス
    """
    # 1. 設定ロード（CLI指定で上書き）
    config = YAMLAdapter().load_config(config_path) if config_path else EditorConfig()
    if downstream:
        config = replace(config, direction=LineageDirection.DOWNSTREAM)
    if only_highlighted:
        config = replace(config, visibility=replace(config.visibility, only_highlighted=True))

    # 2. インポート
    session = EditorSession(config)
    session.import_file(input_json)

    # 3. リネージのハイライト
    if trace_field:
        handle = session.graph.handle_for(trace_field)
        if handle is None:
            logging.warning(f"Unknown field '{trace_field}'")
        else:
            highlight = session.select_field(handle)
            logging.info(f"'{handle}' の{config.direction.value}リネージ: {len(highlight.edge_ids)} エッジ")

    # 4. 出力
    output_path = Path(output)
    if output_path.suffix.lower() == ".md":
        diagram = GenerateMermaidDiagramUseCase().execute(
            session.graph,
            session.rendered_edges(),
            session.highlight,
            config.layout_direction
        )
        output_path.write_text(diagram, encoding="utf-8")
        return output_path
    return session.export_file(str(output_path))


if __name__ == "__main__":
    import argparse

    parser = argparse.ArgumentParser(
        description="Normalize a data-lineage schema model or render its lineage as a Mermaid diagram",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Normalize (re-export) a model
  python lineage_flow.py model.json out/

  # Render the upstream lineage of a field
  python lineage_flow.py model.json lineage.md --field BASE_Orders.total

  # Only the downstream impact, using a config file
  python lineage_flow.py model.json impact.md -f BASE_Lines.qty --downstream \\
    --only-highlighted --config editor.yml
"""
    )

    parser.add_argument("input_json", help="Path to input schema model JSON")
    parser.add_argument("output", help="Output .json/.md file or directory")
    parser.add_argument("--field", "-f", dest="trace_field", help="Field to trace ('entity.field' or 'entity-field')")
    parser.add_argument("--config", "-c", dest="config_path", help="YAML editor config")
    parser.add_argument("--downstream", action="store_true", help="Trace downstream instead of upstream")
    parser.add_argument("--only-highlighted", action="store_true", help="Draw only highlighted edges")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")

    args = parser.parse_args()
    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    try:
        main(
            args.input_json,
            args.output,
            trace_field=args.trace_field,
            config_path=args.config_path,
            downstream=args.downstream,
            only_highlighted=args.only_highlighted
        )
    except (SchemaFormatError, ConfigError) as e:
        logging.error(str(e))
        sys.exit(1)
