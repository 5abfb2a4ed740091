# boots

A library for managing Linux network interfaces over rtnetlink. It also reads
process state from `/proc` and provides a few small helpers for
container-style runtimes. It uses only the standard library.

## Installation

```
pip install .
```

To run the tests:

```
pip install ".[test]"
pytest
```

## Modules

| Module | Contents |
| --- | --- |
| `boots.handle` | `Handle` and the module-level functions `link_list`, `link_add`, `link_by_name`, `link_set_up`, `link_set_master`, `addr_add`. Request builders `build_link_request` and `build_addr_request`. |
| `boots.links` | Link types: `Device`, `Dummy`, `Bridge`, `Iptun`, `Tuntap`, `GenericLink`. Also `LinkAttrs`, `Protinfo`, `LinkOperState`, `InterfaceFlags`, `LinkNotFoundError` and `link_deserialize`. |
| `boots.addr` | `Addr`, `parse_addr`, `parse_ipnet`, `get_ip_family`. |
| `boots.nlmsg` | Netlink message pieces: `NetlinkRequest`, `RtAttr`, `IfInfomsg`, `IfAddrmsg`, `IfaCacheInfo`, `parse_route_attr`, plus encoding helpers. |
| `boots.nlsocket` | `NetlinkSocket`, `SocketHandle`, `execute`, `execute_iter`, `parse_netlink_messages`, `decode_error`. |
| `boots.procstat` | `stat`, `parse_stat`, `Stat`, `State`. |
| `boots.utils` | Size parsing, JSON output, `key=value` lookups, runtime file paths and the kernel version check. |

## Network links

The functions in `boots.handle` send rtnetlink requests to the kernel. Calls
that create or change links or addresses need `CAP_NET_ADMIN`.

```python
from boots.handle import link_add, link_by_name, link_set_up, addr_add
from boots.links import Bridge, LinkAttrs
from boots.addr import parse_addr

link_add(Bridge(attrs=LinkAttrs(name="br0")))

link = link_by_name("br0")
link_set_up(link)
addr_add(link, parse_addr("10.0.0.1/24"))
```

Errors are reported as follows:

- If no link has the given name or alternative name, `link_by_name` raises `boots.links.LinkNotFoundError`.
- If the kernel rejects a request, it raises an `OSError` that carries the errno.
- To get the kernel's extended acknowledgement text in the error message, set `boots.nlsocket.ENABLE_ERROR_MESSAGE_REPORTING = True` before making requests.

Other behaviour to know about:

- If you add an IPv4 address without a broadcast address and its prefix is shorter than /31, the broadcast address is computed and stored on the `Addr`.
- Passing a `Tuntap` to `link_add` creates the device through `/dev/net/tun` instead of a netlink request. `mode` must be `TuntapMode.TUN` or `TuntapMode.TAP`.

A `Handle` does the same work as the module-level functions, but as an object. If the kernel answers a lookup by name with `EINVAL`, the handle remembers this and looks links up by listing them all from then on:

```python
from boots.handle import Handle

handle = Handle()
for link in handle.link_list():
    print(link.attrs.index, link.attrs.name, link.type(), link.attrs.oper_state)
```

## Building and parsing netlink messages

`boots.nlmsg` builds and parses messages without opening a socket:

```python
from boots.nlmsg import RtAttr, parse_route_attr, zero_terminated

attr = RtAttr(3, zero_terminated("eth0"))
parsed = parse_route_attr(attr.serialize())
assert parsed[0].type == 3 and parsed[0].value == b"eth0\x00"
```

`boots.links.link_deserialize` decodes a link message payload (an
`ifinfomsg` followed by attributes) into the matching link class.

## Process state

```python
from boots.procstat import stat

info = stat(1)
print(info.name, info.state, info.start_time)
```

If the contents of `/proc/<pid>/stat` are malformed, `parse_stat` raises `ValueError`.

## Helpers

`boots.utils` contains:

- `parse_size("64M", "")` returns a number of bytes. It accepts an optional `K`, `M` or `G` suffix in either case. If the string has no suffix, the second argument is used as the unit.
- `write_json(stream, value)` writes compact JSON to a binary or text stream.
- `search_arrays`, `get_params` and `annotations` read lists of `key=value` strings.
- `open_pipe_file(path)` opens a file for appending.
- `pipe_path`, `state_file` and `fifo_file` return the paths of `pipe.status`, `state.json` and `sync.fifo` in a directory.
- `compare_version(a, b)` compares dotted version strings.
- `check_kernel_version("5.10.0")` runs `uname -r` and raises `RuntimeError` if the running kernel is older than the given version.

## What this package does not do

This is a library only: it installs no command-line program, and it does not create or run containers. The netlink support covers only the following:

- listing and looking up links
- creating links
- bringing links up
- setting a link's master
- adding addresses

It cannot delete links or addresses, list addresses, or manage routes.