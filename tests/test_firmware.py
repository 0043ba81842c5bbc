import pytest

from nodeprep import firmware
from nodeprep.errors import FirmwareQueryError, InspectionError
from nodeprep.firmware import EntryClass
from nodeprep.model import FirmwareBootEntry


class DummyResult:
    def __init__(self, out: str = "", rc: int = 0, err: str = "") -> None:
        self.out = out
        self.rc = rc
        self.err = err


EFIBOOTMGR = """\
BootCurrent: 0001
Timeout: 5 seconds
BootOrder: 0001,0008,0000,0002
Boot0000* Enter Setup\tFvFile(eec25bdc-67f2-4d95-b1d5-f81b2039d11d)
Boot0001* UEFI SD Device\tVenHw(19cb2b2a-e2f3-4a5c-9a4b-3a2f3ab1b6e1)/SD(0)
Boot0002* UEFI PXEv4 (MAC:48B02D5E1F20)\tMAC(48b02d5e1f20,1)/IPv4(0.0.0.0)
Boot0003* UEFI HTTPv4 (MAC:48B02D5E1F20)\tMAC(48b02d5e1f20,1)/IPv4(0.0.0.0)/Uri()
Boot0004* BootManagerMenuApp\tFvFile(eec25bdc-67f2-4d95-b1d5-f81b2039d11d)
Boot0005* UEFI Shell\tFvFile(7c04a583-9e3e-4f1c-ad65-e05268d0b4d1)
Boot0008* UEFI Samsung SSD 980 500GB S64DNX0R\tPciRoot(0x0)/Pci(0x0,0x0)/NVMe(0x1,00-25-38-5A-21-B0-2C-3A)
Boot000A  ubuntu\tHD(1,GPT,2f9d8f3c)/File(\\EFI\\ubuntu\\shimaa64.efi)
"""


def _use_output(monkeypatch, result):
    monkeypatch.setattr(firmware, "run", lambda cmd, check=False: result)


def test_parse_efibootmgr(monkeypatch):
    _use_output(monkeypatch, DummyResult(EFIBOOTMGR))
    entries = firmware.list_entries()
    assert [e.index for e in entries] == ["0000", "0001", "0002", "0003", "0004", "0005", "0008", "000A"]
    assert entries[1].label == "UEFI SD Device"
    assert entries[1].device_path.startswith("VenHw(")
    assert entries[-1].active is False
    assert firmware.current() == "0001"
    assert firmware.preferred_order() == ["0001", "0008", "0000", "0002"]


def test_classification_is_total(monkeypatch):
    _use_output(monkeypatch, DummyResult(EFIBOOTMGR))
    entries = firmware.list_entries()
    groups = firmware.classify(entries)
    standard = {e.index for e in groups.standard}
    anomalous = {e.index for e in groups.anomalous}
    assert standard | anomalous == {e.index for e in entries}
    assert not standard & anomalous
    assert anomalous == {"000A"}


@pytest.mark.parametrize(
    "label, expected",
    [
        ("Enter Setup", EntryClass.STANDARD),
        ("UEFI SD Device", EntryClass.STANDARD),
        ("UEFI PXEv6 (MAC:00)", EntryClass.STANDARD),
        ("UEFI Shell", EntryClass.STANDARD),
        ("UEFI WD Blue SN570", EntryClass.STANDARD),
        ("UEFI Generic NVMe drive", EntryClass.STANDARD),
        ("ubuntu", EntryClass.ANOMALOUS),
        ("UEFI SD Device (copy)", EntryClass.ANOMALOUS),
        ("", EntryClass.ANOMALOUS),
    ],
)
def test_classify_entry(label, expected):
    assert firmware.classify_entry(FirmwareBootEntry("0009", label, True)) is expected


def test_removable_and_secondary_entries(monkeypatch):
    _use_output(monkeypatch, DummyResult(EFIBOOTMGR))
    entries = firmware.list_entries()
    assert firmware.removable_entry(entries, "UEFI SD Device").index == "0001"
    assert firmware.removable_entry(entries, "UEFI USB Device") is None
    secondary = [e.index for e in entries if firmware.is_secondary_entry(e)]
    assert secondary == ["0008"]


def test_inspect_report(monkeypatch):
    _use_output(monkeypatch, DummyResult(EFIBOOTMGR))
    report = firmware.inspect()
    assert report["current"] == "0001"
    assert report["anomalous"] == ["000A"]
    assert len(report["standard"]) + len(report["anomalous"]) == len(report["entries"])
    assert report["entries"][0]["class"] == "standard"


def test_query_failures(monkeypatch):
    _use_output(monkeypatch, DummyResult("", rc=2, err="EFI variables are not supported on this system."))
    with pytest.raises(FirmwareQueryError) as excinfo:
        firmware.list_entries()
    assert isinstance(excinfo.value, InspectionError)

    def missing(cmd, check=False):
        raise FileNotFoundError("efibootmgr")

    monkeypatch.setattr(firmware, "run", missing)
    with pytest.raises(FirmwareQueryError):
        firmware.preferred_order()

    _use_output(monkeypatch, DummyResult("BootOrder: 0001\n"))
    with pytest.raises(FirmwareQueryError):
        firmware.current()
