from nodeprep import paths


def test_base_path_override(tmp_path, monkeypatch):
    monkeypatch.setenv("NODEPREP_BASE_PATH", str(tmp_path))
    monkeypatch.delenv("NODEPREP_LOG_DIR", raising=False)
    assert paths.base_path() == str(tmp_path.resolve())
    assert paths.logs_dir() == str(tmp_path.resolve() / "logs")
    assert paths.images_dir() == str(tmp_path.resolve() / "images")


def test_scratch_mount(monkeypatch):
    monkeypatch.setenv("NODEPREP_MOUNT_ROOT", "/run/np")
    assert paths.scratch_mount("strip") == "/run/np/strip"
    monkeypatch.delenv("NODEPREP_MOUNT_ROOT")
    assert paths.scratch_mount("strip") == "/mnt/nodeprep/strip"


def test_node_layout_defaults(monkeypatch):
    for name in list(paths.os.environ):
        if name.startswith("NODEPREP_"):
            monkeypatch.delenv(name)
    layout = paths.node_layout()
    assert layout.removable_disk == "/dev/mmcblk0"
    assert layout.removable_root == "/dev/mmcblk0p1"
    assert layout.removable_esp == "/dev/mmcblk0p10"
    assert layout.secondary_root == "/dev/nvme0n1p1"
    assert layout.keep == ("boot", "lost+found")
    assert layout.removable_selector == "/dev/mmcblk0p1"
    assert layout.image.endswith("images/sd-blob.img")


def test_node_layout_overrides(monkeypatch):
    monkeypatch.setenv("NODEPREP_SECONDARY_DISK", "/dev/sda")
    monkeypatch.setenv("NODEPREP_SECONDARY_ROOT", "/dev/sda1")
    monkeypatch.setenv("NODEPREP_KEEP", "boot, lost+found ,,recovery")
    monkeypatch.setenv("NODEPREP_HEADLESS_TARGET", " ")
    layout = paths.node_layout()
    assert layout.secondary_disk == "/dev/sda"
    assert layout.secondary_root == "/dev/sda1"
    assert layout.keep == ("boot", "lost+found", "recovery")
    assert layout.headless_target == "multi-user.target"
