"""
Canned smbstatus output, answered by samba-statusd in test mode.

Lets the exporter chain be run on a machine without a samba server.
"""

LOCK_DATA = """
Locked files:
Pid          Uid        DenyMode   Access      R/W        Oplock           SharePath   Name   Time
--------------------------------------------------------------------------------------------------
1120         1080       DENY_NONE  0x80        RDONLY     NONE             /usr/share/data   .   Sun May 16 12:07:02 2021
1120         1080       DENY_NONE  0x80        RDONLY     NONE             /usr/share/foo   .   Sun May 16 12:07:02 2021
1121         1081       DENY_WRITE 0x12019f    RDWR       LEASE(RWH)       /usr/share/data   report 2021.ods   Sun May 16 13:42:17 2021

"""

SHARE_DATA = """
Service      pid     Machine       Connected at                     Encryption   Signing
---------------------------------------------------------------------------------------------
IPC$         1120    192.168.1.242 Sun May 16 11:55:36 AM 2021 CEST -            -
data         1120    192.168.1.242 Sun May 16 12:07:02 PM 2021 CEST -            -
foo          1120    192.168.1.242 Sun May 16 12:07:09 PM 2021 CEST -            -
data         1121    192.168.1.243 Sun May 16 01:41:55 PM 2021 CEST AES-128-GCM  AES-128-GMAC

"""

PROCESS_DATA = """
Samba version 4.13.5-Debian
PID     Username     Group        Machine                                   Protocol Version  Encryption           Signing
----------------------------------------------------------------------------------------------------------------------------------------
1120    1080         117          192.168.1.242 (ipv4:192.168.1.242:42296)  SMB3_11           -                    partial(AES-128-CMAC)
1121    1081         117          192.168.1.243 (ipv4:192.168.1.243:51010)  SMB3_11           AES-128-GCM          AES-128-GMAC

"""

PS_DATA = [
    {
        'pid': 1120,
        'cpu_usage_percent': 0.2,
        'virtual_memory_usage_bytes': 289488896,
        'virtual_memory_usage_percent': 3.4,
        'io_counter_read_bytes': 2813952,
        'io_counter_write_bytes': 45056,
        'open_files': 12,
        'thread_count': 1
    },
    {
        'pid': 1121,
        'cpu_usage_percent': 1.5,
        'virtual_memory_usage_bytes': 291090432,
        'virtual_memory_usage_percent': 3.5,
        'io_counter_read_bytes': 104857600,
        'io_counter_write_bytes': 5242880,
        'open_files': 17,
        'thread_count': 4
    },
]
