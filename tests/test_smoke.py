def test_import() -> None:
    import chainlink
    from chainlink import __version__
    assert isinstance(__version__, str)


def test_service_importable() -> None:
    from chainlink.service import LinkageService
    assert callable(LinkageService)
