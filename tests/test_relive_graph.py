from relive.relive_graph import DependencyGraph


def test_edges_are_indexed_by_dependee():
    graph = DependencyGraph()
    assert graph.add_edge("/a.py", "/c.py", "from c import x") is True
    assert graph.add_edge("/b.py", "/c.py", "import c") is True
    assert graph.add_edge("/a.py", "/c.py", "from c import x") is False
    assert graph.dependents("/c.py") == ["/a.py", "/b.py"]
    assert graph.linkages("/c.py", "/a.py") == ["from c import x"]
    assert graph.dependencies("/a.py") == ["/c.py"]
    assert graph.dependents("/a.py") == []


def test_multiple_linkages_between_the_same_pair():
    graph = DependencyGraph()
    graph.add_edge("/a.py", "/c.py", "from c import x")
    graph.add_edge("/a.py", "/c.py", "import c")
    assert graph.linkages("/c.py", "/a.py") == ["from c import x", "import c"]


def test_remove_linkage_drops_empty_edges():
    graph = DependencyGraph()
    graph.add_edge("/a.py", "/c.py", "from c import x")
    graph.add_edge("/a.py", "/d.py", "import d")
    graph.remove_linkage("/a.py", "from c import x")
    assert graph.dependents("/c.py") == []
    assert graph.dependents("/d.py") == ["/a.py"]


def test_cycles_are_representable():
    graph = DependencyGraph()
    graph.add_edge("/a.py", "/b.py", "import b")
    graph.add_edge("/b.py", "/a.py", "import a")
    assert graph.dependents("/a.py") == ["/b.py"]
    assert graph.dependents("/b.py") == ["/a.py"]
