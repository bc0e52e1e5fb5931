# zigbridge

Drivers for Zigbee coordinator adapters that are reached over a serial line,
plus helpers for building Zigbee Cluster Library (ZCL) frames.

Two adapter families are supported:

- **ZiGate**: `zigbridge.zigate.ZiGate`. Its framing (byte escaping, XOR
  checksum, packet header) is in `zigbridge.zigate_frame`.
- **ZBOSS NCP**: `zigbridge.zboss.ZBoss`. Its framing (low level header,
  CRC-8 and CRC-16, acknowledgement frames) is in `zigbridge.zboss_frame`.

No third-party libraries are needed at run time.

## Installing

```
pip install .
```

## Building ZCL frames

`zigbridge.zcl` holds the ZCL constants (`FrameControl`, `Command`, `Status`,
`DataType`, `Cluster`, `PowerSource`, `TuyaType`) and frame builders:

```python
from zigbridge.zcl import (
    DataType, FrameControl, zcl_header, read_attributes_request,
    write_attribute_request, data_size, variable_data_size,
)

zcl_header(FrameControl.CLUSTER_SPECIFIC, 7, 0x01)        # b"\x01\x07\x01"
read_attributes_request(1, 0x0000, [0x0004, 0x0005])      # read manufacturer and model name
write_attribute_request(2, 0x0000, 0x0010, DataType.IEEE_ADDRESS, bytes(8))
data_size(DataType.UNSIGNED_16)                           # 2
variable_data_size(DataType.CHARACTER_STRING, b"\x03abc", 0)  # (3, 1)
```

A non-zero manufacturer code passed to `zcl_header` (and to the request
builders) sets the manufacturer-specific bit and inserts the code into the
header. `data_size` returns 0 for types that have no fixed size;
`variable_data_size` returns the size together with the offset where the value
starts, consuming the length byte of strings.

## Driving an adapter

An adapter is built from three things:

- a transport: any object with `write(data)` and `read(timeout)`, where
  `read` returns the bytes that arrived within `timeout` seconds (or `b""`).
  `zigbridge.radio.Transport` provides this on top of a binary reader and
  writer, for example the file objects of an already configured serial port;
- a `zigbridge.radio.RadioSettings`: channel (11 to 26), PAN ID, 16-byte
  network key, TX power, whether the adapter's stored network may be
  rewritten (`write`), the permit-join address, groups to join (`multicast`,
  used by ZiGate) and local endpoints to register (`endpoints`, a dict of
  `EndpointDescriptor`, used by ZBoss). Invalid values raise `ValueError`;
- a `zigbridge.radio.RadioListener`: receives device joins and leaves, ZDO
  and ZCL messages, request completions and the "coordinator ready"
  notification. Pass callables such as `on_zcl_message=...`, or subclass it
  and override the methods.

```python
from zigbridge.radio import RadioListener, RadioSettings, Transport
from zigbridge.zigate import ZiGate

class Printer(RadioListener):
    def zcl_message_received(self, network_address, endpoint_id, cluster_id, link_quality, payload):
        print(hex(network_address), endpoint_id, hex(cluster_id), payload.hex(":"))

    def coordinator_ready(self):
        print("network up")

adapter = ZiGate(Transport(reader, writer), RadioSettings(channel=15), Printer())
adapter.soft_reset()
```

Bytes read from the line are handed to `adapter.receive(data)`; decoded
packets are dispatched to the listener. When the adapter reports that it has
restarted, the driver starts the coordinator itself (`start_coordinator`)
and then calls `coordinator_ready` on the listener. `send_request` reads from
the transport while it waits and raises `zigbridge.radio.RequestTimeout` when
no answer arrives within `request_timeout` seconds (2 by default).
`start_coordinator` raises `RuntimeError` when a required step fails.

Both drivers offer `unicast_request`, `multicast_request`, `zdo_request` (node
descriptor, simple descriptor and active endpoints only), `bind_request`,
`leave_request`, `lqi_request` and `permit_join`; each returns `True` or
`False`. Bind and leave requests act on the device whose IEEE address is set
in the adapter's `request_address` attribute. `ZBoss.bind_request` also takes
the target's network address.

`ZBoss` additionally acknowledges every frame it receives, tracks the NCP
sequence number, applies its trust-center policies at startup and, if the
adapter's stored role, channel or PAN ID differ from the settings and `write`
is enabled, resets the adapter and forms a new network.

## What the package does not do

- It does not open or configure serial ports; bring your own reader and
  writer.
- It keeps no device database, does not interview devices, parse attribute
  values into properties or configure reporting. It delivers raw ZDO and ZCL
  payloads to the listener.
- Inter-PAN / TouchLink requests are not supported.
- Only ZiGate and ZBOSS NCP adapters are supported.
- There is no command-line program or network front end.

## Running the tests

```
pip install .[test]
pytest
```