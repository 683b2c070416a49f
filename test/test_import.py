import mirrorsync


def test_import():
    # make sure symbols are accessible by fully qualified path
    assert isinstance(mirrorsync.core.Store, type)
    assert isinstance(mirrorsync.core.store.StoreState, type)
    assert isinstance(mirrorsync.core.queue.ChangeQueue, type)
    assert isinstance(mirrorsync.core.tree.Tree, type)
    assert isinstance(mirrorsync.core.tree.node.Node, type)
    assert isinstance(mirrorsync.sync.SyncClient, type)
    assert isinstance(mirrorsync.sync.endpoint.EndpointSyncClient, type)

    # ensure no internal symbols accidentally exported
    assert all([not sym.startswith("_") for sym in mirrorsync.__all__])
