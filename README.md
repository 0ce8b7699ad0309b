# liminekit

Host-side tooling for the Limine boot protocol, in pure Python with no
third-party dependencies.

## What it does

- **Deploy** the BIOS boot sector and stage 2 of a bootloader image to a disk
  or disk image that uses MBR or GPT, recording the overwritten bytes so the
  deployment can be undone (`liminekit.deploy`, `liminekit.device`).
- **Inflate** raw DEFLATE streams and single-member gzip data
  (`liminekit.inflate`).
- **Describe** the boot protocol: feature request identifiers, memory-map
  types, media types, terminal callback kinds, UUIDs, and scanning an image
  for embedded requests (`liminekit.protocol`).
- **Read and write** GPT headers and partition entries, with their CRC-32
  checksums (`liminekit.gpt`).

## Installation

```
pip install .
```

## Command line

Deploy a bootloader image to a device or disk image:

```
liminekit-deploy /path/to/disk.img --bootloader-image=limine-hdd.bin
```

A second positional argument names a 1-based GPT partition to hold stage 2,
instead of embedding it next to the partition entry arrays:

```
liminekit-deploy /path/to/disk.img 2 --bootloader-image=limine-hdd.bin
```

Options:

- `--bootloader-image=<filename>` — the bootloader image to deploy
  (required unless undeploying).
- `--force-mbr` — treat the device as MBR even if the safety checks fail;
  conflicting partition status bytes and filesystem signatures are cleared
  (dangerous; may destroy data). Refused if the device has a valid GPT.
- `--undeploy-data-file=<filename>` — where to store, after a successful
  deployment, the bytes that deployment overwrote; with `--undeploy`, the
  file to read them from.
- `--undeploy` — restore everything a previous deployment changed, using
  the undeploy data file.
- `--help`, `-h` — show usage.

Progress messages go to standard error. The exit status is 0 on success
and 1 on failure. If deployment fails partway, every write already made is
rolled back before the command exits.

Print the installed version:

```
liminekit-version
```

## Library use

```python
from liminekit.inflate import gzip_decompress, inflate, InflateError
from liminekit.protocol import Feature, MemmapType, MemmapEntry, find_requests
from liminekit.gpt import crc32, parse_gpt_header

with open("stage2.gz", "rb") as f:
    payload = gzip_decompress(f.read())

print(MemmapType.USABLE.label())                  # "Usable"
print(Feature.HHDM.request_id())                  # four 64-bit words
print(MemmapEntry(0x1000, 0x2000, MemmapType.RESERVED))  # 0x1000->0x3000 Reserved

with open("kernel.elf", "rb") as f:
    for offset, feature in find_requests(f.read()):
        print(hex(offset), feature.name)
```

`find_requests` reports only requests that start on an 8-byte boundary.
`gzip_decompress` does not verify the gzip trailer's CRC or size.

Deploying from Python:

```python
from liminekit.device import BlockDevice, save_undeploy_data, load_undeploy_data
from liminekit.deploy import deploy, DeployError

with open("disk.img", "r+b") as stream, open("limine-hdd.bin", "rb") as image:
    device = BlockDevice(stream)
    loc_a, loc_b = deploy(device, image.read())   # offsets of the stage 2 halves
    save_undeploy_data(device.undeploy_records, "undeploy.bin")

# Later, to undo it:
with open("disk.img", "r+b") as stream:
    device = BlockDevice(stream)
    device.undeploy_records = load_undeploy_data("undeploy.bin")
    device.undeploy()
```

`deploy(device, bootloader_image, partition_index=None, force_mbr=False)`
takes a `BlockDevice`, not a raw file object. `BlockDevice` detects a
physical block size of 512, 2048 or 4096 bytes and keeps at most 256
undeploy records.

Errors are raised as `InflateError` (a `ValueError`), `DeviceError`
(`liminekit.device`) and `DeployError` (`liminekit.deploy`).

## What it does not do

- It ships no bootloader image; the image to deploy must be supplied.
- It does not install `limine.sys` or any configuration onto a partition's
  filesystem; that file still has to be copied by hand.
- It does not boot anything: the protocol module only describes requests
  and records, it does not answer them.

## Tests

```
pip install ".[test]"
pytest
```