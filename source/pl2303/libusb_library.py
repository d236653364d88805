"""Minimalistic ctypes-based libusb-1.0 binding for driving PL2303 USB-to-serial bridges."""

import ctypes
import sys

# libusb constants.

LIBUSB_SUCCESS = 0
LIBUSB_ERROR_TIMEOUT = -7
LIBUSB_ERROR_NOT_SUPPORTED = -12

LIBUSB_ENDPOINT_IN = 0x80
LIBUSB_ENDPOINT_OUT = 0x00

LIBUSB_ENDPOINT_DIR_MASK = 0x80
LIBUSB_TRANSFER_TYPE_MASK = 0x03

# Alignment for structs used by libusb. The value 8 works on 64-bit Microsoft Windows.
C_STRUCT_ALIGNMENT = 8


# libusb types.

class LibUsbContext(ctypes.Structure):
    """Opaque type representing a libusb context."""
    _pack_ = C_STRUCT_ALIGNMENT
    _fields_ = []


LibUsbContextPtr = ctypes.POINTER(LibUsbContext)


class LibUsbDevice(ctypes.Structure):
    """Opaque type representing a libusb device."""
    _pack_ = C_STRUCT_ALIGNMENT
    _fields_ = []


LibUsbDevicePtr = ctypes.POINTER(LibUsbDevice)


class LibUsbDeviceHandle(ctypes.Structure):
    """Opaque type representing a libusb device handle (i.e., a USB device that has been opened)."""
    _pack_ = C_STRUCT_ALIGNMENT
    _fields_ = []


LibUsbDeviceHandlePtr = ctypes.POINTER(LibUsbDeviceHandle)


class LibUsbEndpointDescriptor(ctypes.Structure):
    """A libusb endpoint descriptor."""
    _pack_ = C_STRUCT_ALIGNMENT
    _fields_ = [
        ("bLength", ctypes.c_uint8),
        ("bDescriptorType", ctypes.c_uint8),
        ("bEndpointAddress", ctypes.c_uint8),
        ("bmAttributes", ctypes.c_uint8),
        ("wMaxPacketSize", ctypes.c_uint16),
        ("bInterval", ctypes.c_uint8),
        ("bRefresh", ctypes.c_uint8),
        ("bSynchAddress", ctypes.c_uint8),
        ("extra", ctypes.POINTER(ctypes.c_ubyte)),
        ("extra_length", ctypes.c_int)
    ]


LibUsbEndpointDescriptorPtr = ctypes.POINTER(LibUsbEndpointDescriptor)


class LibUsbInterfaceDescriptor(ctypes.Structure):
    """A libusb interface descriptor."""
    _pack_ = C_STRUCT_ALIGNMENT
    _fields_ = [
        ("bLength", ctypes.c_uint8),
        ("bDescriptorType", ctypes.c_uint8),
        ("bInterfaceNumber", ctypes.c_uint8),
        ("bAlternateSetting", ctypes.c_uint8),
        ("bNumEndpoints", ctypes.c_uint8),
        ("bInterfaceClass", ctypes.c_uint8),
        ("bInterfaceSubClass", ctypes.c_uint8),
        ("bInterfaceProtocol", ctypes.c_uint8),
        ("iInterface", ctypes.c_uint8),
        ("endpoint", LibUsbEndpointDescriptorPtr),
        ("extra", ctypes.POINTER(ctypes.c_ubyte)),
        ("extra_length", ctypes.c_int)
    ]


LibUsbInterfaceDescriptorPtr = ctypes.POINTER(LibUsbInterfaceDescriptor)


class LibUsbInterface(ctypes.Structure):
    """A libusb interface."""
    _pack_ = C_STRUCT_ALIGNMENT
    _fields_ = [
        ("altsetting", LibUsbInterfaceDescriptorPtr),
        ("num_altsetting", ctypes.c_int)
    ]


LibUsbInterfacePtr = ctypes.POINTER(LibUsbInterface)


class LibUsbConfigDescriptor(ctypes.Structure):
    """A libusb configuration descriptor."""
    _pack_ = C_STRUCT_ALIGNMENT
    _fields_ = [
        ("bLength", ctypes.c_uint8),
        ("bDescriptorType", ctypes.c_uint8),
        ("wTotalLength", ctypes.c_uint16),
        ("bNumInterfaces", ctypes.c_uint8),
        ("bConfigurationValue", ctypes.c_uint8),
        ("iConfiguration", ctypes.c_uint8),
        ("bmAttributes", ctypes.c_uint8),
        ("MaxPower", ctypes.c_uint8),
        ("interface", LibUsbInterfacePtr),
        ("extra", ctypes.POINTER(ctypes.c_ubyte)),
        ("extra_length", ctypes.c_int)
    ]


LibUsbConfigDescriptorPtr = ctypes.POINTER(LibUsbConfigDescriptor)


class LibUsbDeviceDescriptor(ctypes.Structure):
    """A libusb device descriptor."""
    _pack_ = C_STRUCT_ALIGNMENT
    _fields_ = [
        ("bLength", ctypes.c_uint8),
        ("bDescriptorType", ctypes.c_uint8),
        ("bcdUSB", ctypes.c_uint16),
        ("bDeviceClass", ctypes.c_uint8),
        ("bDeviceSubClass", ctypes.c_uint8),
        ("bDeviceProtocol", ctypes.c_uint8),
        ("bMaxPacketSize0", ctypes.c_uint8),
        ("idVendor", ctypes.c_uint16),
        ("idProduct", ctypes.c_uint16),
        ("bcdDevice", ctypes.c_uint16),
        ("iManufacturer", ctypes.c_uint8),
        ("iProduct", ctypes.c_uint8),
        ("iSerialNumber", ctypes.c_uint8),
        ("bNumConfigurations", ctypes.c_uint8)
    ]


LibUsbDeviceDescriptorPtr = ctypes.POINTER(LibUsbDeviceDescriptor)


class LibUsbLibraryError(Exception):
    """Base class for errors reported by the LibUsbLibrary methods."""


class LibUsbLibraryFunctionCallError(LibUsbLibraryError):
    """An error was reported by a libusb function."""
    def __init__(self, error_code: int, error_message: str):
        super().__init__(error_code, error_message)
        self.error_code = error_code
        self.error_message = error_message

    def __str__(self):
        return f"libusb error {self.error_message} ({self.error_code})"


class LibUsbLibraryMiscellaneousError(LibUsbLibraryError):
    """Any error in a LibUsbLibrary method that is not reported by a function call the libusb library."""
    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class LibUsbLibrary:
    """This class encapsulates a dynamically loaded libusb instance."""

    def __init__(self, filename: str):

        if sys.platform == "win32":
            # The Windows version of libusb uses the 'stdcall' calling convention.
            lib = ctypes.WinDLL(filename)
        else:
            lib = ctypes.CDLL(filename)

        # Annotate the library functions.
        LibUsbLibrary._annotate_library_functions(lib)

        self._lib = lib

    @staticmethod
    def _annotate_library_functions(lib):
        """Add ctype-compliant type annotations to the libusb functions we'll be using."""

        lib.libusb_init.argtypes = [ctypes.POINTER(LibUsbContextPtr)]
        lib.libusb_init.restype = ctypes.c_int

        lib.libusb_exit.argtypes = [LibUsbContextPtr]
        lib.libusb_exit.restype = None

        lib.libusb_get_device_list.argtypes = [LibUsbContextPtr, ctypes.POINTER(ctypes.POINTER(LibUsbDevicePtr))]
        lib.libusb_get_device_list.restype = ctypes.c_ssize_t

        lib.libusb_free_device_list.argtypes = [ctypes.POINTER(LibUsbDevicePtr), ctypes.c_int]
        lib.libusb_free_device_list.restype = None

        lib.libusb_ref_device.argtypes = [LibUsbDevicePtr]
        lib.libusb_ref_device.restype = LibUsbDevicePtr

        lib.libusb_unref_device.argtypes = [LibUsbDevicePtr]
        lib.libusb_unref_device.restype = None

        lib.libusb_get_device_descriptor.argtypes = [LibUsbDevicePtr, LibUsbDeviceDescriptorPtr]
        lib.libusb_get_device_descriptor.restype = ctypes.c_int

        lib.libusb_get_config_descriptor.argtypes = [LibUsbDevicePtr, ctypes.c_uint8,
                                                     ctypes.POINTER(LibUsbConfigDescriptorPtr)]
        lib.libusb_get_config_descriptor.restype = ctypes.c_int

        lib.libusb_free_config_descriptor.argtypes = [LibUsbConfigDescriptorPtr]
        lib.libusb_free_config_descriptor.restype = None

        lib.libusb_open.argtypes = [LibUsbDevicePtr, ctypes.POINTER(LibUsbDeviceHandlePtr)]
        lib.libusb_open.restype = ctypes.c_int

        lib.libusb_close.argtypes = [LibUsbDeviceHandlePtr]
        lib.libusb_close.restype = None

        lib.libusb_control_transfer.argtypes = [
            LibUsbDeviceHandlePtr, ctypes.c_uint8, ctypes.c_uint8, ctypes.c_uint16, ctypes.c_uint16,
            ctypes.POINTER(ctypes.c_ubyte), ctypes.c_uint16, ctypes.c_uint]
        lib.libusb_control_transfer.restype = ctypes.c_int

        lib.libusb_bulk_transfer.argtypes = [
            LibUsbDeviceHandlePtr, ctypes.c_ubyte, ctypes.POINTER(ctypes.c_ubyte),
            ctypes.c_int, ctypes.POINTER(ctypes.c_int), ctypes.c_uint]
        lib.libusb_bulk_transfer.restype = ctypes.c_int

        lib.libusb_interrupt_transfer.argtypes = [
            LibUsbDeviceHandlePtr, ctypes.c_ubyte, ctypes.POINTER(ctypes.c_ubyte),
            ctypes.c_int, ctypes.POINTER(ctypes.c_int), ctypes.c_uint]
        lib.libusb_interrupt_transfer.restype = ctypes.c_int

        lib.libusb_error_name.argtypes = [ctypes.c_int]
        lib.libusb_error_name.restype = ctypes.c_char_p

        lib.libusb_get_device.argtypes = [LibUsbDeviceHandlePtr]
        lib.libusb_get_device.restype = LibUsbDevicePtr

        lib.libusb_claim_interface.argtypes = [LibUsbDeviceHandlePtr, ctypes.c_int]
        lib.libusb_claim_interface.restype = ctypes.c_int

        lib.libusb_release_interface.argtypes = [LibUsbDeviceHandlePtr, ctypes.c_int]
        lib.libusb_release_interface.restype = ctypes.c_int

        lib.libusb_set_auto_detach_kernel_driver.argtypes = [LibUsbDeviceHandlePtr, ctypes.c_int]
        lib.libusb_set_auto_detach_kernel_driver.restype = ctypes.c_int

    def _libusb_exception(self, error_code: int) -> LibUsbLibraryFunctionCallError:
        """Look up the description of the error and return a LibUsbError exception."""
        error_message = self.get_error_name(error_code)
        return LibUsbLibraryFunctionCallError(error_code, error_message)

    def init(self) -> LibUsbContextPtr:
        """Initialize a libusb context."""
        ctx = LibUsbContextPtr()
        result = self._lib.libusb_init(ctx)
        if result != LIBUSB_SUCCESS:
            raise self._libusb_exception(result)
        return ctx

    def exit(self, ctx: LibUsbContextPtr) -> None:
        """Discard a libusb context."""
        self._lib.libusb_exit(ctx)

    def get_error_name(self, error_code: int) -> str:
        """Find the error name associated with the given error code."""
        result = self._lib.libusb_error_name(error_code)
        return result.decode('ascii')

    def get_device_descriptor(self, device: LibUsbDevicePtr) -> LibUsbDeviceDescriptor:
        """Get a USB device descriptor."""
        device_descriptor = LibUsbDeviceDescriptor()

        result = self._lib.libusb_get_device_descriptor(device, device_descriptor)
        if result != LIBUSB_SUCCESS:
            raise self._libusb_exception(result)

        return device_descriptor

    def get_config_descriptor(self, device: LibUsbDevicePtr, config_index: int) -> LibUsbConfigDescriptorPtr:
        """Get a configuration descriptor.

        Note: the configuration descriptor should at some point be freed by calling `free_config_descriptor`.
        """
        config_descriptor = LibUsbConfigDescriptorPtr()

        result = self._lib.libusb_get_config_descriptor(device, config_index, config_descriptor)
        if result != LIBUSB_SUCCESS:
            raise self._libusb_exception(result)

        return config_descriptor

    def free_config_descriptor(self, config_descriptor: LibUsbConfigDescriptorPtr) -> None:
        """Free a configuration descriptor."""
        self._lib.libusb_free_config_descriptor(config_descriptor)

    def get_device(self, device_handle: LibUsbDeviceHandlePtr) -> LibUsbDevicePtr:
        """Get a Device from a Device Handle."""
        return self._lib.libusb_get_device(device_handle)

    def find_devices(self, ctx: LibUsbContextPtr, vid: int, pid: int) -> list[LibUsbDevicePtr]:
        """Enumerate USB devices and return the ones that match the given Vendor and Product ID.

        The devices are returned in the order in which libusb enumerates them.

        libusb hands out the device list as a C array that must be given back to libusb in one piece.
        To be able to return a plain Python list, we take an additional reference on each matching device
        before discarding the device list. The caller owns these references and must drop them by passing
        the devices to `unref_devices` once it is done with them; an opened device handle holds its own
        reference, so it stays valid after that.
        """

        device_list = ctypes.POINTER(LibUsbDevicePtr)()

        result = self._lib.libusb_get_device_list(ctx, device_list)
        if result < 0:
            raise self._libusb_exception(result)

        device_count = result

        devices = []
        try:
            for device_index in range(device_count):
                device = device_list[device_index]

                device_descriptor = self.get_device_descriptor(device)

                if (device_descriptor.idVendor != vid) or (device_descriptor.idProduct != pid):
                    # VID or PID mismatch -- reject.
                    continue

                devices.append(self._lib.libusb_ref_device(device))
        finally:
            # Discard the list of devices and decrement their reference counts.
            # The devices we kept have the extra reference we took above.
            self._lib.libusb_free_device_list(device_list, 1)

        return devices

    def unref_devices(self, devices: list[LibUsbDevicePtr]) -> None:
        """Drop the references taken by `find_devices`."""
        for device in devices:
            self._lib.libusb_unref_device(device)

    def control_transfer(self, device_handle: LibUsbDeviceHandlePtr, request_type: int, request: int, value: int,
                         index: int, data_or_length: (bytes | int), timeout: int) -> bytes:
        """Execute a control request.

        For host-to-device requests, `data_or_length` is the payload to send (possibly empty).
        For device-to-host requests, it is the maximum number of response bytes; the response is returned.
        """
        if (request_type & LIBUSB_ENDPOINT_DIR_MASK) == LIBUSB_ENDPOINT_IN:
            length = data_or_length
            data = ctypes.create_string_buffer(length)
        else:
            length = len(data_or_length)
            data = ctypes.create_string_buffer(bytes(data_or_length), length)

        result = self._lib.libusb_control_transfer(
            device_handle,
            request_type,  # bmRequestType
            request,       # bRequest
            value,         # wValue
            index,         # wIndex
            ctypes.cast(data, ctypes.POINTER(ctypes.c_ubyte)),
            length,        # wLength
            timeout
        )
        if result < 0:
            raise self._libusb_exception(result)

        if (request_type & LIBUSB_ENDPOINT_DIR_MASK) == LIBUSB_ENDPOINT_OUT:
            return b""

        # Return a bytes instance.
        return bytes(data[:result])

    def bulk_transfer_out(self, device_handle: LibUsbDeviceHandlePtr, endpoint: int, data: bytes, timeout: int) -> None:
        """Execute a bulk-out transfer."""
        transferred = ctypes.c_int()
        buffer = ctypes.create_string_buffer(bytes(data), len(data))
        result = self._lib.libusb_bulk_transfer(
            device_handle, endpoint, ctypes.cast(buffer, ctypes.POINTER(ctypes.c_ubyte)), len(data), transferred, timeout)
        if result != LIBUSB_SUCCESS:
            raise self._libusb_exception(result)

        if transferred.value != len(data):
            raise LibUsbLibraryMiscellaneousError(
                f"Bulk-out transfer incomplete ({transferred.value} of {len(data)} bytes sent).")

    def bulk_transfer_in(self, device_handle: LibUsbDeviceHandlePtr, endpoint: int, maxsize: int, timeout: int) -> bytes:
        """Execute a bulk-in transfer.

        A timeout is not an error here: whatever arrived before the timeout expired is returned (possibly nothing).
        """
        return self._transfer_in(self._lib.libusb_bulk_transfer, device_handle, endpoint, maxsize, timeout)

    def interrupt_transfer_in(self, device_handle: LibUsbDeviceHandlePtr, endpoint: int, maxsize: int, timeout: int) -> bytes:
        """Execute an interrupt-in transfer. Timeouts are handled as in `bulk_transfer_in`."""
        return self._transfer_in(self._lib.libusb_interrupt_transfer, device_handle, endpoint, maxsize, timeout)

    def _transfer_in(self, function, device_handle: LibUsbDeviceHandlePtr, endpoint: int, maxsize: int, timeout: int) -> bytes:

        data = ctypes.create_string_buffer(maxsize)

        transferred = ctypes.c_int()

        result = function(
            device_handle, endpoint, ctypes.cast(data, ctypes.POINTER(ctypes.c_ubyte)), maxsize, transferred, timeout)
        if result not in (LIBUSB_SUCCESS, LIBUSB_ERROR_TIMEOUT):
            raise self._libusb_exception(result)

        return data[:transferred.value]

    def open(self, device: LibUsbDevicePtr) -> LibUsbDeviceHandlePtr:
        """Open the libusb device, yielding a device handle that we can use for I/O.

        This operation increments the libusb-level reference count of the device.
        """
        device_handle = LibUsbDeviceHandlePtr()
        result = self._lib.libusb_open(device, device_handle)
        if result != LIBUSB_SUCCESS:
            raise self._libusb_exception(result)
        return device_handle

    def close(self, device_handle: LibUsbDeviceHandlePtr) -> None:
        """Close the libusb device, making it unavailable for I/O.

        This operation decrements the libusb-level reference count of the device.
        """
        self._lib.libusb_close(device_handle)

    def claim_interface(self, device_handle: LibUsbDeviceHandlePtr, interface_number: int) -> None:
        """Let the OS know we want to take exclusive control of the interface."""
        result = self._lib.libusb_claim_interface(device_handle, interface_number)
        if result != LIBUSB_SUCCESS:
            raise self._libusb_exception(result)

    def release_interface(self, device_handle: LibUsbDeviceHandlePtr, interface_number: int) -> None:
        """Let the OS know we want to drop exclusive control of the interface."""
        result = self._lib.libusb_release_interface(device_handle, interface_number)
        if result != LIBUSB_SUCCESS:
            raise self._libusb_exception(result)

    def set_auto_detach_kernel_driver(self, device_handle: LibUsbDeviceHandlePtr, enable: bool) -> None:
        """Enable/disable automatic kernel driver detachment by libusb.

        On Linux, the pl2303 kernel driver normally owns the interface; libusb detaches it
        when we claim the interface and re-attaches it when we release it.
        """
        result = self._lib.libusb_set_auto_detach_kernel_driver(device_handle, enable)
        if result not in (LIBUSB_SUCCESS, LIBUSB_ERROR_NOT_SUPPORTED):
            raise self._libusb_exception(result)
