import io
import struct

import pytest

from liminekit.deploy import DeployError, deploy, main
from liminekit.device import BlockDevice
from liminekit.gpt import (
    GPT_SIGNATURE,
    GptHeader,
    crc32,
    parse_gpt_entry,
    parse_gpt_header,
)

LB = 512
DISK_LBAS = 200
PART_START = 40

BOOT = bytes((i * 7 + 3) % 256 for i in range(512))
STAGE2 = bytes((i * 11 + 5) % 256 for i in range(2048))
IMAGE = BOOT + STAGE2


def make_entry(start, end):
    return struct.pack("<16s16sQQQ72s", b"\x11" * 16, b"\x22" * 16, start, end, 0,
                       "data".encode("utf-16-le"))


def make_gpt_disk(extra_used=()):
    disk = bytearray(LB * DISK_LBAS)
    disk[450] = 0xEE
    entries = bytearray(128 * 128)
    entries[0:128] = make_entry(PART_START, 100)
    for index in extra_used:
        entries[index * 128:(index + 1) * 128] = make_entry(120, 130)
    array_crc = crc32(entries)
    primary = GptHeader(GPT_SIGNATURE, 0x10000, 92, 0, 0, 1, DISK_LBAS - 1, 34, 165,
                        b"\x33" * 16, 2, 128, 128, array_crc).with_checksum()
    secondary = GptHeader(GPT_SIGNATURE, 0x10000, 92, 0, 0, DISK_LBAS - 1, 1, 34, 165,
                          b"\x33" * 16, 167, 128, 128, array_crc).with_checksum()
    disk[LB:LB + 92] = primary.pack()
    disk[2 * LB:2 * LB + len(entries)] = entries
    disk[167 * LB:167 * LB + len(entries)] = entries
    disk[(DISK_LBAS - 1) * LB:(DISK_LBAS - 1) * LB + 92] = secondary.pack()
    return io.BytesIO(bytes(disk))


def make_mbr_disk(**patches):
    disk = bytearray(64 * 1024)
    for offset, value in patches.get("bytes", {}).items():
        disk[offset:offset + len(value)] = value
    return io.BytesIO(bytes(disk))


def test_gpt_embedding_updates_headers():
    stream = make_gpt_disk()
    deploy(BlockDevice(stream), IMAGE, None, False)
    disk = stream.getvalue()

    primary = parse_gpt_header(disk[LB:])
    assert primary.is_valid()
    assert 0 < primary.number_of_partition_entries < 128
    assert primary.with_checksum().crc32 == primary.crc32
    count = primary.number_of_partition_entries
    assert primary.partition_entry_array_crc32 == crc32(disk[2 * LB:2 * LB + count * 128])

    secondary = parse_gpt_header(disk[(DISK_LBAS - 1) * LB:])
    assert secondary.number_of_partition_entries == count
    assert secondary.with_checksum().crc32 == secondary.crc32
    assert parse_gpt_entry(disk[2 * LB:3 * LB]).is_used()


def test_gpt_embedding_places_stage2():
    stream = make_gpt_disk()
    original = stream.getvalue()
    loc_a, loc_b = deploy(BlockDevice(stream), IMAGE, None, False)
    disk = stream.getvalue()
    half = len(STAGE2) // 2

    assert loc_a % LB == 0 and loc_b % LB == 0
    count = parse_gpt_header(disk[LB:]).number_of_partition_entries
    assert loc_a >= 2 * LB + count * 128
    assert disk[loc_a:loc_a + half] == STAGE2[:half]
    assert disk[loc_b:loc_b + half] == STAGE2[half:]
    assert struct.unpack_from("<HHQQ", disk, 0x1A4) == (half, half, loc_a, loc_b)
    assert disk[:218] == BOOT[:218]
    assert disk[218:224] == original[218:224]
    assert disk[440:510] == original[440:510]


def test_gpt_partition_index():
    stream = make_gpt_disk()
    loc_a, loc_b = deploy(BlockDevice(stream), IMAGE, 1, False)
    disk = stream.getvalue()
    assert loc_a == PART_START * LB
    assert loc_b == loc_a + len(STAGE2) // 2
    assert disk[loc_a:loc_a + 2048] == STAGE2


def test_gpt_unused_partition():
    stream = make_gpt_disk()
    original = stream.getvalue()
    with pytest.raises(DeployError, match="No such partition"):
        deploy(BlockDevice(stream), IMAGE, 2, False)
    assert stream.getvalue() == original


def test_gpt_partition_too_large():
    stream = make_gpt_disk()
    with pytest.raises(DeployError, match="too large"):
        deploy(BlockDevice(stream), IMAGE, 200, False)


def test_gpt_too_many_used_entries():
    stream = make_gpt_disk(extra_used=(127,))
    original = stream.getvalue()
    with pytest.raises(DeployError, match="too many used"):
        deploy(BlockDevice(stream), IMAGE, None, False)
    assert stream.getvalue() == original


def test_force_mbr_refused_on_gpt():
    stream = make_gpt_disk()
    with pytest.raises(DeployError, match="refusing"):
        deploy(BlockDevice(stream), IMAGE, None, True)


def test_gpt_undeploy_restores_disk():
    stream = make_gpt_disk()
    original = stream.getvalue()
    dev = BlockDevice(stream)
    deploy(dev, IMAGE, None, False)
    assert stream.getvalue() != original
    assert dev.undeploy() is True
    assert stream.getvalue() == original


def test_mbr_deploy():
    stream = make_mbr_disk()
    locs = deploy(BlockDevice(stream), IMAGE, None, False)
    disk = stream.getvalue()
    assert locs == (512, 512 + len(STAGE2) // 2)
    assert disk[446] == 0x80
    assert disk[512:512 + len(STAGE2)] == STAGE2


def test_mbr_bad_status_rejected():
    stream = make_mbr_disk(bytes={446: b"\x12"})
    original = stream.getvalue()
    with pytest.raises(DeployError, match="valid partition table"):
        deploy(BlockDevice(stream), IMAGE, None, False)
    assert stream.getvalue() == original


def test_mbr_bad_status_forced():
    stream = make_mbr_disk(bytes={446: b"\x12"})
    deploy(BlockDevice(stream), IMAGE, None, True)
    assert stream.getvalue()[446] == 0x80


def test_mbr_ntfs_signature_rejected():
    stream = make_mbr_disk(bytes={3: b"NTFS"})
    with pytest.raises(DeployError):
        deploy(BlockDevice(stream), IMAGE, None, False)


def test_tiny_image_rejected():
    stream = make_mbr_disk()
    with pytest.raises(DeployError):
        deploy(BlockDevice(stream), b"\x00" * 100, None, False)


def test_main_without_arguments(capsys):
    assert main([]) == 1
    assert "Usage:" in capsys.readouterr().out


def test_main_help(capsys):
    assert main(["-h"]) == 0
    assert "--undeploy" in capsys.readouterr().out


def test_main_empty_undeploy_file():
    assert main(["--undeploy-data-file="]) == 1


def test_main_missing_device(tmp_path):
    assert main([str(tmp_path / "absent.img")]) == 1


def test_main_requires_image(tmp_path):
    disk_path = tmp_path / "disk.img"
    disk_path.write_bytes(make_mbr_disk().getvalue())
    assert main([str(disk_path)]) == 1


def test_main_undeploy_requires_data_file(tmp_path):
    disk_path = tmp_path / "disk.img"
    disk_path.write_bytes(make_mbr_disk().getvalue())
    assert main(["--undeploy", str(disk_path)]) == 1


def test_main_deploy_and_undeploy(tmp_path):
    disk_path = tmp_path / "disk.img"
    original = make_mbr_disk().getvalue()
    disk_path.write_bytes(original)
    image_path = tmp_path / "boot.bin"
    image_path.write_bytes(IMAGE)
    data_path = tmp_path / "undeploy.bin"

    assert main([str(disk_path), f"--bootloader-image={image_path}",
                 f"--undeploy-data-file={data_path}"]) == 0
    assert disk_path.read_bytes()[512:512 + len(STAGE2)] == STAGE2

    assert main(["--undeploy", f"--undeploy-data-file={data_path}", str(disk_path)]) == 0
    assert disk_path.read_bytes() == original


def test_main_gpt_partition(tmp_path):
    disk_path = tmp_path / "disk.img"
    disk_path.write_bytes(make_gpt_disk().getvalue())
    image_path = tmp_path / "boot.bin"
    image_path.write_bytes(IMAGE)
    assert main([str(disk_path), "1", f"--bootloader-image={image_path}"]) == 0
    disk = disk_path.read_bytes()
    assert disk[PART_START * LB:PART_START * LB + len(STAGE2)] == STAGE2