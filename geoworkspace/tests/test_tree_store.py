import tempfile
import unittest
from pathlib import Path

from geoworkspace import tree_store
from geoworkspace.errors import DuplicateName, InvalidOperation, NodeNotFound
from geoworkspace.schema_models import FileTreeNode


class TestTreeStore(unittest.TestCase):
    def setUp(self):
        self.temp_dir = tempfile.TemporaryDirectory()
        self.base = Path(self.temp_dir.name)
        self.original_store_path = tree_store.TREE_STORE_PATH
        tree_store.TREE_STORE_PATH = self.base / "file_tree.json"

    def tearDown(self):
        tree_store.TREE_STORE_PATH = self.original_store_path
        self.temp_dir.cleanup()

    def _physical(self, name: str, content: str = "x") -> Path:
        path = self.base / name
        path.write_text(content, encoding="utf-8")
        return path

    def _file(self, name: str, parent_id=None, physical_name=None) -> FileTreeNode:
        path = self._physical(physical_name or name)
        return tree_store.create_file(
            name=name,
            parent_id=parent_id,
            physical_path=str(path),
            size_bytes=path.stat().st_size,
        )

    def test_empty_store_has_no_nodes(self):
        self.assertEqual(tree_store.list_nodes(), [])
        self.assertEqual(tree_store.get_tree(), [])

    def test_sibling_names_are_unique(self):
        folder = tree_store.create_folder("Survey")
        with self.assertRaises(DuplicateName) as ctx:
            tree_store.create_folder("Survey")
        self.assertEqual(ctx.exception.status_code, 409)

        nested = tree_store.create_folder("Survey", folder.id)
        self.assertEqual(nested.parent_id, folder.id)

    def test_root_parent_aliases(self):
        folder = tree_store.create_folder("Data", "null")
        self.assertIsNone(folder.parent_id)
        node = self._file("a.csv", parent_id="undefined")
        self.assertIsNone(node.parent_id)

    def test_file_cannot_be_a_parent(self):
        node = self._file("a.csv")
        with self.assertRaises(InvalidOperation):
            tree_store.create_folder("Inside", node.id)
        with self.assertRaises(NodeNotFound):
            tree_store.create_folder("Inside", "n_missing")

    def test_empty_name_is_rejected(self):
        with self.assertRaises(InvalidOperation):
            tree_store.create_folder("   ")

    def test_rename_rederives_extension(self):
        node = self._file("a.csv")
        renamed = tree_store.rename_node(node.id, "b.json")

        self.assertEqual(renamed.name, "b.json")
        self.assertEqual(renamed.extension, ".json")
        self.assertEqual(tree_store.get_node(node.id).extension, ".json")

    def test_rename_to_sibling_name_is_rejected(self):
        self._file("a.csv")
        other = self._file("b.csv")
        with self.assertRaises(DuplicateName):
            tree_store.rename_node(other.id, "a.csv")
        tree_store.rename_node(other.id, "b.csv")

    def test_unique_sibling_name(self):
        self._file("roads.json")
        self._file("roads_1.json")

        self.assertEqual(tree_store.unique_sibling_name(None, "roads.json"), "roads_2.json")
        self.assertEqual(tree_store.unique_sibling_name(None, "rivers.json"), "rivers.json")

    def test_update_node_keeps_position_and_bumps_timestamp(self):
        folder = tree_store.create_folder("Data")
        node = self._file("a.csv", parent_id=folder.id)

        stored = tree_store.update_node(node.model_copy(update={"size_bytes": 99, "parent_id": None}))

        self.assertEqual(stored.size_bytes, 99)
        self.assertEqual(stored.parent_id, folder.id)
        self.assertEqual(stored.created_at, node.created_at)
        self.assertGreaterEqual(stored.updated_at, node.updated_at)

    def test_cascading_delete_removes_descendants_and_shapefile_companions(self):
        root = tree_store.create_folder("Project")
        sub = tree_store.create_folder("Layers", root.id)
        csv_node = self._file("points.csv", parent_id=sub.id, physical_name="points_1.csv")
        for suffix in (".shp", ".shx", ".dbf", ".prj", ".cpg"):
            self._physical(f"roads_1{suffix}")
        shp_node = tree_store.create_file(
            name="roads.shp",
            parent_id=root.id,
            physical_path=str(self.base / "roads_1.shp"),
            size_bytes=1,
        )
        keep = self._file("keep.csv")

        result = tree_store.delete_node(root.id)

        self.assertEqual(set(result["deleted_ids"]), {root.id, sub.id, csv_node.id, shp_node.id})
        order = result["deleted_ids"]
        self.assertLess(order.index(csv_node.id), order.index(sub.id))
        self.assertLess(order.index(sub.id), order.index(root.id))
        self.assertEqual(len(result["unlinked_paths"]), 6)
        for suffix in (".shp", ".shx", ".dbf", ".prj", ".cpg"):
            self.assertFalse((self.base / f"roads_1{suffix}").exists())
        self.assertFalse((self.base / "points_1.csv").exists())
        self.assertEqual([node.id for node in tree_store.list_nodes()], [keep.id])

    def test_delete_tolerates_missing_physical_files(self):
        node = self._file("a.csv")
        Path(node.physical_path).unlink()

        result = tree_store.delete_node(node.id)

        self.assertEqual(result, {"deleted_ids": [node.id], "unlinked_paths": []})
        with self.assertRaises(NodeNotFound):
            tree_store.delete_node(node.id)

    def test_unlink_is_idempotent(self):
        path = self._physical("lonely.json")

        self.assertEqual(tree_store.unlink_physical_files(path), [str(path)])
        self.assertEqual(tree_store.unlink_physical_files(path), [])
        self.assertEqual(tree_store.unlink_physical_files(None), [])

    def test_get_tree_nests_children(self):
        root = tree_store.create_folder("Project")
        node = self._file("a.csv", parent_id=root.id)

        tree = tree_store.get_tree()

        self.assertEqual(len(tree), 1)
        self.assertEqual(tree[0]["id"], root.id)
        self.assertFalse(tree[0]["is_leaf"])
        self.assertEqual([child["id"] for child in tree[0]["children"]], [node.id])
        self.assertTrue(tree[0]["children"][0]["is_leaf"])
        self.assertNotIn("children", tree[0]["children"][0])


def test_build_tree_drops_orphans():
    nodes = [
        FileTreeNode(id="f1", name="A", kind="folder", created_at="t", updated_at="t"),
        FileTreeNode(
            id="x1",
            name="x.csv",
            kind="file",
            parent_id="f1",
            physical_path="/tmp/x.csv",
            size_bytes=1,
            created_at="t",
            updated_at="t",
        ),
        FileTreeNode(
            id="o1",
            name="orphan.csv",
            kind="file",
            parent_id="gone",
            physical_path="/tmp/o.csv",
            size_bytes=1,
            created_at="t",
            updated_at="t",
        ),
    ]

    tree = tree_store.build_tree(nodes)

    assert [entry["id"] for entry in tree] == ["f1"]
    assert [child["id"] for child in tree[0]["children"]] == ["x1"]
